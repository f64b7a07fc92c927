"""Routes Telegram updates to the membership and screening actions.

Every handler re-reads what it needs from storage; the only in-process state
is ``BotContext.pending`` (which members owe a free-text answer).
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .codes import CODE_RE, ensure_code_format, is_valid_code
from .invites import RedeemStatus, mint_invite, redeem_invite
from .log import bind_update, clear_update
from .models_api import CallbackQuery, Message, Update, User
from .models_db import ScreeningQuestion, ScreeningSession
from .screening_engine import (
    Outcome,
    PendingTextAnswers,
    Q_CHOICE,
    Q_TEXT,
    StartStatus,
    TERMINAL_STATUSES,
    advance,
    answered_question_ids,
    count_questions,
    get_session_for,
    record_choice,
    record_text,
    start_or_resume,
    stored_outcome,
)
from .telegram import (
    BTN_CODES,
    BTN_MEMBERS,
    BTN_MY_CODE,
    BTN_REGISTER,
    BTN_SCREENING,
    BTN_WHOAMI,
    answer_keyboard,
    escape_markdown,
    parse_answer_payload,
    reply_keyboard,
)

logger = logging.getLogger(__name__)

MARKDOWN = "Markdown"

GENERIC_FAILURE = "Something went wrong. Please try again, or contact an admin if it keeps happening."
NOT_REGISTERED = "❌ You are not a member yet. Press \"Register\" or send /register."
NOT_REGISTERED_INVITE = "❌ You are not a member yet. Send `/register YOURCODE` with your invitation code."
ALREADY_MEMBER = "✅ You are already a member."
CODE_MISMATCH = "❌ That code does not match your membership code. Check /mycode and try again."
SCREENING_DONE = "Your screening is already complete (result: {status}). It can only be taken once."
ASK_FOR_CODE = "To start the screening, send your personal code (for example `A123456`)."
BAD_ANSWER = "That answer is no longer valid. Send your code again to continue the screening."
TEXT_HINT = "Use the buttons below, or send /help for the list of commands."
INVITES_DISABLED = "Invitation codes are disabled (REGISTRATION_MODE=open)."

REDEEM_MESSAGES = {
    RedeemStatus.ALREADY_MEMBER: ALREADY_MEMBER,
    RedeemStatus.INVALID: "❌ Invalid code.",
    RedeemStatus.INACTIVE: "❌ This code has been revoked.",
    RedeemStatus.EXPIRED: "⏰ This code has expired.",
    RedeemStatus.EXHAUSTED: "🚫 This code has no uses left.",
}

BUTTON_COMMANDS = {
    BTN_REGISTER: "register",
    BTN_MY_CODE: "mycode",
    BTN_SCREENING: "screening",
    BTN_WHOAMI: "whoami",
    BTN_MEMBERS: "members",
    BTN_CODES: "codes",
}


class Messenger(Protocol):
    def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None,
                     reply_markup: Optional[Dict[str, Any]] = None) -> None: ...

    def answer_callback_query(self, callback_id: str, text: Optional[str] = None) -> None: ...


@dataclass(frozen=True)
class BotContext:
    admin_ids: frozenset
    mode: str
    messenger: Messenger
    pending: PendingTextAnswers = field(default_factory=PendingTextAnswers)

    @property
    def invite_mode(self) -> bool:
        return self.mode == "invite"

    def is_admin(self, tg_id: int) -> bool:
        return tg_id in self.admin_ids


def _int_arg(args: List[str], i: int, default: int) -> int:
    try:
        return int(args[i])
    except (IndexError, ValueError):
        return default


def _iso(dt) -> str:
    return dt.isoformat() if dt is not None else "-"


class Router:
    def __init__(self, db: Session, ctx: BotContext) -> None:
        self.db = db
        self.ctx = ctx

    def reply(self, chat_id: int, text: str, parse_mode: Optional[str] = None,
              reply_markup: Optional[Dict[str, Any]] = None) -> None:
        self.ctx.messenger.send_message(chat_id, text, parse_mode=parse_mode, reply_markup=reply_markup)

    def keyboard(self, user: User) -> Dict[str, Any]:
        return reply_keyboard(self.ctx.is_admin(user.id), self.ctx.invite_mode)

    # -- dispatch -----------------------------------------------------------

    def on_message(self, msg: Message) -> None:
        user = msg.from_user
        if user is None or user.is_bot or msg.text is None:
            return
        text = msg.text.strip()
        if text.startswith("/"):
            parts = text.split()
            command = parts[0][1:].split("@", 1)[0].lower()
            self.on_command(msg, user, command, parts[1:])
        elif text in BUTTON_COMMANDS:
            self.on_command(msg, user, BUTTON_COMMANDS[text], [])
        else:
            self.on_text(msg, user, text)

    def on_command(self, msg: Message, user: User, command: str, args: List[str]) -> None:
        handler = getattr(self, f"cmd_{command}", None)
        if handler is None:
            # unknown commands get the same silence as admin commands
            return
        if command in ADMIN_COMMANDS and not self.ctx.is_admin(user.id):
            return
        handler(msg.chat.id, user, args)

    def on_text(self, msg: Message, user: User, text: str) -> None:
        candidate = text.upper()
        if CODE_RE.match(candidate):
            self.submit_code(msg.chat.id, user, candidate)
            return
        if self.ctx.pending.peek(user.id) is not None and self.submit_text_answer(msg.chat.id, user, text):
            return
        self.reply(msg.chat.id, TEXT_HINT, reply_markup=self.keyboard(user))

    # -- member commands ----------------------------------------------------

    def cmd_start(self, chat_id: int, user: User, args: List[str]) -> None:
        if crud.get_member(self.db, user.id) is not None:
            self.reply(chat_id, f"{ALREADY_MEMBER}\nSee /help for what you can do.", reply_markup=self.keyboard(user))
        elif self.ctx.invite_mode:
            self.reply(chat_id, "Hi! To join, send your invitation code:\n`/register YOURCODE`",
                       parse_mode=MARKDOWN, reply_markup=self.keyboard(user))
        else:
            self.reply(chat_id, "Hi! Press \"Register\" to join the club and get your personal code.",
                       reply_markup=self.keyboard(user))

    def cmd_help(self, chat_id: int, user: User, args: List[str]) -> None:
        lines = ["Commands:"]
        if self.ctx.invite_mode:
            lines.append("/register CODE - join with an invitation code")
        else:
            lines.append("/register - join and get your personal code")
        lines += [
            "/mycode - show your personal code",
            "/whoami - your membership status",
            "/screening - take the screening quiz",
        ]
        if self.ctx.is_admin(user.id):
            lines += ["", "Admin commands:", "/members - member count", "/findcode CODE - look up a member"]
            if self.ctx.invite_mode:
                lines += [
                    "/gencode [uses] [minutes] [note] - create an invitation code",
                    "/codes - active invitation codes",
                    "/revoke CODE - deactivate an invitation code",
                ]
        self.reply(chat_id, "\n".join(lines), reply_markup=self.keyboard(user))

    def cmd_register(self, chat_id: int, user: User, args: List[str]) -> None:
        if self.ctx.invite_mode:
            self.redeem(chat_id, user, args)
            return
        member, created = crud.register_member(
            self.db, user.id, user.username, user.first_name, user.last_name
        )
        if created:
            logger.info("registered tg_id=%s", user.id)
            self.reply(chat_id, f"🎉 Welcome to the club!\nYour personal code: `{member.my_code}`",
                       parse_mode=MARKDOWN, reply_markup=self.keyboard(user))
            return
        code = ensure_code_format(self.db, user.id)
        self.reply(chat_id, f"{ALREADY_MEMBER}\nYour personal code: `{code}`",
                   parse_mode=MARKDOWN, reply_markup=self.keyboard(user))

    def redeem(self, chat_id: int, user: User, args: List[str]) -> None:
        if not args:
            self.reply(chat_id, "Usage: `/register CODE`", parse_mode=MARKDOWN)
            return
        status = redeem_invite(
            self.db, user.id, args[0],
            username=user.username, first_name=user.first_name, last_name=user.last_name,
        )
        if status is not RedeemStatus.OK:
            self.reply(chat_id, REDEEM_MESSAGES[status])
            return
        code = ensure_code_format(self.db, user.id)
        self.reply(chat_id, f"🎉 Registration complete!\nYour personal code: `{code}`",
                   parse_mode=MARKDOWN, reply_markup=self.keyboard(user))

    def not_registered_text(self) -> str:
        return NOT_REGISTERED_INVITE if self.ctx.invite_mode else NOT_REGISTERED

    def cmd_mycode(self, chat_id: int, user: User, args: List[str]) -> None:
        code = ensure_code_format(self.db, user.id)
        if code is None:
            self.reply(chat_id, self.not_registered_text(), parse_mode=MARKDOWN)
            return
        self.reply(chat_id, f"Your personal code: `{code}`", parse_mode=MARKDOWN)

    def cmd_whoami(self, chat_id: int, user: User, args: List[str]) -> None:
        member = crud.get_member(self.db, user.id)
        if member is None:
            self.reply(chat_id, self.not_registered_text(), parse_mode=MARKDOWN)
            return
        code = ensure_code_format(self.db, user.id)
        self.reply(
            chat_id,
            "✅ You are a member.\n"
            f"Personal code: {code}\n"
            f"Invitation code: {member.code_used or '-'}\n"
            f"Joined: {_iso(member.joined_at)}\n"
            f"Screening: {member.screening_status}",
        )

    def cmd_screening(self, chat_id: int, user: User, args: List[str]) -> None:
        member = crud.get_member(self.db, user.id)
        if member is None:
            self.reply(chat_id, self.not_registered_text(), parse_mode=MARKDOWN)
            return
        if member.screening_status in TERMINAL_STATUSES:
            self.screening_done(chat_id, user.id, member.screening_status)
            return
        if args:
            self.submit_code(chat_id, user, args[0].upper())
            return
        self.reply(chat_id, ASK_FOR_CODE, parse_mode=MARKDOWN)

    # -- screening ----------------------------------------------------------

    def submit_code(self, chat_id: int, user: User, code: str) -> None:
        stored = ensure_code_format(self.db, user.id)
        if stored is None:
            self.reply(chat_id, self.not_registered_text(), parse_mode=MARKDOWN)
            return
        if code != stored:
            self.reply(chat_id, CODE_MISMATCH)
            return
        start = start_or_resume(self.db, user.id)
        if start.status is StartStatus.NOT_REGISTERED:
            self.reply(chat_id, self.not_registered_text(), parse_mode=MARKDOWN)
        elif start.status is StartStatus.TERMINAL:
            self.screening_done(chat_id, user.id, start.member_status)
        else:
            self.ask_next(chat_id, user.id, start.session)

    def screening_done(self, chat_id: int, tg_id: int, status: Optional[str]) -> None:
        text = SCREENING_DONE.format(status=status)
        session = get_session_for(self.db, tg_id)
        if session is not None and session.finished_at is not None:
            outcome = stored_outcome(self.db, session)
            text += f"\nScore: {outcome.score} / {outcome.max_score}"
        self.reply(chat_id, text)

    def closed_status(self, tg_id: int) -> Optional[str]:
        """The member's status if it no longer accepts answers, else None."""
        member = crud.get_member(self.db, tg_id)
        if member is not None and member.screening_status in TERMINAL_STATUSES:
            return member.screening_status
        return None

    def ask_next(self, chat_id: int, tg_id: int, session: ScreeningSession) -> None:
        step = advance(self.db, session)
        if isinstance(step, Outcome):
            self.ctx.pending.discard(tg_id)
            logger.info("screening finished tg_id=%s score=%s grade=%s", tg_id, step.score, step.grade)
            self.reply(
                chat_id,
                "🏁 Screening complete!\n"
                f"Score: *{step.score}* / {step.max_score}\n"
                f"Grade: *{step.grade}* ({step.label})\n\n"
                f"{step.explanation}",
                parse_mode=MARKDOWN,
            )
            return
        number = len(answered_question_ids(self.db, session.id)) + 1
        header = f"Question {number}/{count_questions(self.db)}\n\n{step.q_text}"
        if step.q_type == Q_TEXT:
            self.ctx.pending.expect(tg_id, session.id, step.id)
            self.reply(chat_id, f"{header}\n\n(Reply with a message.)")
        else:
            self.ctx.pending.discard(tg_id)
            self.reply(chat_id, header, reply_markup=answer_keyboard(step.id, list(step.options or [])))

    def submit_text_answer(self, chat_id: int, user: User, text: str) -> bool:
        slot = self.ctx.pending.peek(user.id)
        session = self.db.get(ScreeningSession, slot.session_id) if slot else None
        if session is None or session.tg_id != user.id or session.finished_at is not None:
            self.ctx.pending.discard(user.id)
            return False
        status = self.closed_status(user.id)
        if status is not None:
            self.ctx.pending.discard(user.id)
            self.screening_done(chat_id, user.id, status)
            return True
        record_text(self.db, session.id, slot.question_id, text)
        self.ctx.pending.pop(user.id)
        self.ask_next(chat_id, user.id, session)
        return True

    def on_callback(self, cq: CallbackQuery) -> None:
        user = cq.from_user
        chat_id = cq.message.chat.id if cq.message is not None else user.id
        self.ctx.messenger.answer_callback_query(cq.id)
        parsed = parse_answer_payload(cq.data)
        if parsed is None:
            self.reply(chat_id, BAD_ANSWER)
            return
        question_id, index = parsed
        question = self.db.get(ScreeningQuestion, question_id)
        session = get_session_for(self.db, user.id)
        if (
            question is None
            or question.q_type != Q_CHOICE
            or not 0 <= index < len(question.options or [])
            or session is None
            or session.finished_at is not None
        ):
            self.reply(chat_id, BAD_ANSWER)
            return
        # status may have been closed outside the quiz (legacy passed/failed rows)
        status = self.closed_status(user.id)
        if status is not None:
            self.screening_done(chat_id, user.id, status)
            return
        record_choice(self.db, session.id, question_id, index)
        self.ask_next(chat_id, user.id, session)

    # -- admin commands -----------------------------------------------------

    def cmd_members(self, chat_id: int, user: User, args: List[str]) -> None:
        total = crud.count_members(self.db)
        lines = [f"Members: {total}"]
        for status, n in sorted(crud.count_members_by_status(self.db).items()):
            lines.append(f"• {status}: {n}")
        self.reply(chat_id, "\n".join(lines))

    def cmd_findcode(self, chat_id: int, user: User, args: List[str]) -> None:
        if not args:
            self.reply(chat_id, "Usage: /findcode CODE")
            return
        code = args[0].upper()
        if not is_valid_code(code):
            self.reply(chat_id, "Code format is one letter and six digits, e.g. A123456.")
            return
        member = crud.get_member_by_code(self.db, code)
        if member is None:
            self.reply(chat_id, "No member with that code.")
            return
        name = " ".join(p for p in (member.first_name, member.last_name) if p) or "-"
        self.reply(
            chat_id,
            f"Code: {code}\n"
            f"Telegram id: {member.tg_id}\n"
            f"Username: {'@' + member.username if member.username else '-'}\n"
            f"Name: {name}\n"
            f"Joined: {_iso(member.joined_at)}\n"
            f"Screening: {member.screening_status}",
        )

    def cmd_gencode(self, chat_id: int, user: User, args: List[str]) -> None:
        if not self.ctx.invite_mode:
            self.reply(chat_id, INVITES_DISABLED)
            return
        uses = max(1, _int_arg(args, 0, 1))
        minutes = max(0, _int_arg(args, 1, 0))
        note = " ".join(args[2:]) or None
        invite = mint_invite(self.db, created_by=user.id, uses=uses, minutes=minutes, note=note)
        logger.info("admin %s minted invitation %s uses=%s minutes=%s", user.id, invite.code, uses, minutes)
        self.reply(
            chat_id,
            "Invitation code created:\n"
            f"Code: `{invite.code}`\n"
            f"Uses: {invite.allowed_uses}\n"
            f"Expires: {_iso(invite.expires_at) if invite.expires_at else 'never'}\n"
            f"Note: {escape_markdown(invite.note) if invite.note else '-'}",
            parse_mode=MARKDOWN,
        )

    def cmd_codes(self, chat_id: int, user: User, args: List[str]) -> None:
        if not self.ctx.invite_mode:
            self.reply(chat_id, INVITES_DISABLED)
            return
        rows = crud.list_active_codes(self.db)
        if not rows:
            self.reply(chat_id, "No active invitation codes.")
            return
        lines = [
            f"• {r.code} | left: {r.allowed_uses - r.used_count} | expires: {_iso(r.expires_at)} | {r.note or ''}"
            for r in rows
        ]
        self.reply(chat_id, "\n".join(lines))

    def cmd_revoke(self, chat_id: int, user: User, args: List[str]) -> None:
        if not self.ctx.invite_mode:
            self.reply(chat_id, INVITES_DISABLED)
            return
        if not args:
            self.reply(chat_id, "Usage: /revoke CODE")
            return
        if crud.revoke_invite(self.db, args[0].upper()):
            logger.info("admin %s revoked invitation %s", user.id, args[0].upper())
            self.reply(chat_id, "✅ Code revoked.")
        else:
            self.reply(chat_id, "❌ No such code.")


ADMIN_COMMANDS = frozenset({"members", "findcode", "gencode", "codes", "revoke"})


def handle_update(update: Update, db: Session, ctx: BotContext) -> None:
    """Apply one update. Storage errors are rolled back and reported generically."""
    router = Router(db, ctx)
    if update.callback_query is not None:
        who = update.callback_query.from_user.id
        chat_id = update.callback_query.message.chat.id if update.callback_query.message else who
        kind = "callback"
    elif update.message is not None and update.message.from_user is not None:
        who = update.message.from_user.id
        chat_id = update.message.chat.id
        kind = "message"
    else:
        return
    bind_update(update.update_id, who, kind)
    try:
        if update.callback_query is not None:
            router.on_callback(update.callback_query)
        else:
            router.on_message(update.message)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("storage error while handling update")
        ctx.messenger.send_message(chat_id, GENERIC_FAILURE)
    finally:
        clear_update()
