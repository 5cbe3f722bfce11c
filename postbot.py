import asyncio
import json
import os
import logging
import re
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

import aiofiles
from dotenv import load_dotenv
from json import JSONDecodeError
from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
    text,
    update as sql_update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    InlineQueryResultArticle,
    InlineQueryResultCachedPhoto,
    InlineQueryResultsButton,
    InputTextMessageContent,
    Message,
    Update,
)
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    InlineQueryHandler,
    MessageHandler,
    filters,
)

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=os.getenv("LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
)
logger = logging.getLogger(__name__)


# ---------- Constants ----------
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 9
BUTTON_ID_LENGTH = 5
CODE_MINT_ATTEMPTS = 2  # first try + one retry on collision

PREVIEW_CODE = "PREVIEW"
DEEP_LINK_SCHEME = "tg"
START_HELP_PARAMETER = "help"

MAX_BUTTONS = 100
MAX_ALERT_CHARS = 200
LIST_PREVIEW_LENGTH = 40
INLINE_DESCRIPTION_LENGTH = 50

INLINE_CACHE_EMPTY = 10
INLINE_CACHE_HIT = 5

DEFAULT_DATABASE_URL = "sqlite:///./bot.db"
DEFAULT_PARSE_MODE = "MarkdownV2"
DEFAULT_LOG_LEVEL = "WARNING"

STATUS_DRAFT = "draft"
STATUS_PUBLISHED = "published"

MEDIA_TEXT = "text"
MEDIA_PHOTO = "photo"

BUTTON_URL = "url"
BUTTON_ALERT = "alert"
BUTTON_SHARE = "share"

BUTTON_DEF_RE = re.compile(r"^\[(.+?)\]\((.*)\)$")
URL_PAYLOAD_RE = re.compile(rf"^(https?|{DEEP_LINK_SCHEME})://")
ALERT_PREFIX = "alert:"
SHARE_PAYLOAD = "share"

# ---------- Messages ----------
MESSAGES: Dict[str, str] = {
    # Generic/system
    "ACCESS_DENIED": "Access denied.",
    "GENERIC_FAILURE": "❌ Something went wrong. Please try again later.",
    "NO_DRAFT": "No draft yet. Start with /new",
    "NO_DRAFT_TO_SAVE": "There is no draft to save. Start with /new",
    "EMPTY_TEXT": "(empty text)",
    "PHOTO_LABEL": "Photo",

    # Help
    "HELP_TEXT": (
        "Hi!\n\n"
        "*Workflow:*\n"
        "1. Send /new to start a draft.\n"
        "2. Send the text or a photo for the post.\n"
        "3. Send the button 'formula' as the next message.\n\n"
        "*Button formula:*\n"
        "- Every line is a new row of buttons.\n"
        "- Buttons in a row are separated with |\n"
        "- Button format: `[Label](data)`\n\n"
        "*Data examples:*\n"
        "- URL: `[Google](https://google.com)`\n"
        "- Alert: `[Help](alert:This is a tip)`\n"
        "- Share: `[Share](share)`\n\n"
        "*Other commands:*\n"
        "/preview, /save, /edit `<code>`, /list, /delete `<code>`, /get `<code>`\n\n"
        "*Limits:*\n"
        "- Post text and formula: 4096 characters per message.\n"
        "- Photo caption: 1024 characters.\n"
        "- Up to 100 buttons per post.\n"
        "- Alert popups: up to 200 characters.\n"
        "- Photo posts keep only the Telegram file id; it may go stale."
    ),

    # Draft flow
    "DRAFT_RESET": "📝 Draft reset. Send the text or a photo.",
    "TEXT_ACCEPTED": "✅ Text accepted. Now send the button formula.",
    "PHOTO_ACCEPTED": "✅ Photo accepted. Now send the button formula.",
    "BUTTONS_SET": "✅ Buttons set. Check with /preview and save with /save.",
    "FORMULA_ERROR": "❌ Formula syntax error. Check the format and try again.",
    "FORMULA_ERROR_DETAIL": "❌ Formula syntax error: {detail}\nCheck the format and try again.",
    "EMPTY_POST": "You can't save an empty post. Add text or a photo.",
    "POST_SAVED": "Post saved. Code to insert:\n\n`@{username} {code}`",

    # Edit/delete/list
    "USAGE_EDIT": "Specify the post code: /edit CODE",
    "USAGE_DELETE": "Specify the post code: /delete CODE",
    "USAGE_GET": "Specify the post code: /get CODE",
    "POST_LOADED": "Post {code} loaded into the draft. Send new text/photo or a new button formula, then /save.",
    "POST_NOT_FOUND": "Post not found.",
    "POST_NOT_YOURS": "This is not your post.",
    "POST_NOT_FOUND_OR_FOREIGN": "Post not found or it is not yours.",
    "POST_DELETED": "🗑️ Post {code} deleted.",
    "LIST_EMPTY": "You have no posts.",
    "LIST_HEADER": "Your posts:",
    "LIST_ITEM": "▫️ {code} - {preview}...",

    # Buttons/inline
    "PREVIEW_INACTIVE": "This is a preview, buttons are not active.",
    "PREVIEW_INACTIVE_SHORT": "Preview: buttons are not active yet",
    "BUTTON_UNAVAILABLE": "This button is no longer available.",
    "ALERT_FALLBACK": "...",
    "INLINE_TITLE": "Insert post",
}

# ---------- Callback Data Tokens ----------
CB_ALERT_PREFIX = "a:"


# ---------- Errors ----------
class PostBotError(Exception):
    """Base error; ``message_key`` selects the reply from MESSAGES."""

    message_key = "GENERIC_FAILURE"

    def user_message(self) -> str:
        return MESSAGES[self.message_key]


class AuthorizationError(PostBotError):
    message_key = "ACCESS_DENIED"


class FormulaSyntaxError(PostBotError):
    message_key = "FORMULA_ERROR"

    def __init__(self, detail: str, line: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.line = line

    def user_message(self) -> str:
        return MESSAGES["FORMULA_ERROR_DETAIL"].format(detail=self.detail)


class EmptyPostError(PostBotError):
    message_key = "EMPTY_POST"


class NoDraftError(PostBotError):
    message_key = "NO_DRAFT"


class NotFoundError(PostBotError):
    message_key = "POST_NOT_FOUND"

    def __init__(self, code: str, foreign: bool = False):
        super().__init__(code)
        self.code = code
        self.foreign = foreign
        if foreign:
            self.message_key = "POST_NOT_YOURS"


class StorageError(PostBotError):
    pass


# ---------- Data Model ----------
@dataclass(frozen=True)
class Button:
    kind: str
    text: str
    id: str
    target: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"type": self.kind, "text": self.text, "id": self.id}
        if self.kind == BUTTON_URL:
            data["url"] = self.target or ""
        elif self.kind == BUTTON_ALERT:
            data["alert"] = self.message or ""
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Button":
        kind = data.get("type")
        if kind not in (BUTTON_URL, BUTTON_ALERT, BUTTON_SHARE):
            raise ValueError(f"unknown button type: {kind!r}")
        return cls(
            kind=kind,
            text=str(data.get("text", "")),
            id=str(data.get("id", "")),
            target=data.get("url") if kind == BUTTON_URL else None,
            message=data.get("alert") if kind == BUTTON_ALERT else None,
        )


ButtonGrid = List[List[Button]]


@dataclass
class Post:
    id: int
    owner_id: int
    status: str
    code: Optional[str] = None
    media_type: str = MEDIA_TEXT
    file_id: Optional[str] = None
    caption: str = ""
    buttons: ButtonGrid = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def has_content(self) -> bool:
        return bool(self.caption) or bool(self.file_id)

    @property
    def is_photo(self) -> bool:
        return self.media_type == MEDIA_PHOTO and bool(self.file_id)

    def find_button(self, button_id: str) -> Optional[Button]:
        for row in self.buttons:
            for button in row:
                if button.id == button_id:
                    return button
        return None


@dataclass(frozen=True)
class PostSummary:
    code: str
    caption_preview: str
    media_type: str


def dump_grid(grid: ButtonGrid) -> str:
    return json.dumps([[b.to_dict() for b in row] for row in grid], ensure_ascii=False)


def load_grid(raw: Optional[str]) -> ButtonGrid:
    """Parse a stored grid; malformed data is logged and read as an empty grid."""
    if not raw:
        return []
    try:
        rows = json.loads(raw)
        return [[Button.from_dict(b) for b in row] for row in rows]
    except (JSONDecodeError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Failed to parse stored button grid: %s", e)
        return []


# ---------- Utilities ----------
def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _gen_token(existing: Set[str]) -> str:
    while True:
        token = generate_code(BUTTON_ID_LENGTH)
        if token not in existing:
            return token


def normalize_code(raw: Optional[str]) -> str:
    return (raw or "").strip().upper()


def truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Button Formula Compiler ----------
def _build_button(label: str, payload: str, button_id: str, line_no: int) -> Button:
    if payload.lower() == SHARE_PAYLOAD:
        return Button(kind=BUTTON_SHARE, text=label, id=button_id)
    if payload.startswith(ALERT_PREFIX):
        message = payload[len(ALERT_PREFIX):]
        if len(message) > MAX_ALERT_CHARS:
            raise FormulaSyntaxError(
                f"line {line_no}: alert text is longer than {MAX_ALERT_CHARS} characters",
                line=line_no,
            )
        return Button(kind=BUTTON_ALERT, text=label, id=button_id, message=message)
    if URL_PAYLOAD_RE.match(payload):
        return Button(kind=BUTTON_URL, text=label, id=button_id, target=payload)
    raise FormulaSyntaxError(f"line {line_no}: unsupported button data {payload!r}", line=line_no)


def compile_formula(formula: str) -> ButtonGrid:
    """Compile a button formula into rows of buttons.

    Every non-blank line is a row, buttons in a row are separated by ``|`` and
    each one reads ``[label](data)``. A single bad definition rejects the whole
    formula with FormulaSyntaxError.
    """
    grid: ButtonGrid = []
    used_ids: Set[str] = set()
    total = 0
    for line_no, line in enumerate(formula.splitlines(), start=1):
        if not line.strip():
            continue
        row: List[Button] = []
        for raw_def in line.split("|"):
            definition = raw_def.strip()
            match = BUTTON_DEF_RE.match(definition)
            if not match:
                raise FormulaSyntaxError(
                    f"line {line_no}: expected [label](data), got {definition!r}", line=line_no
                )
            button_id = _gen_token(used_ids)
            used_ids.add(button_id)
            row.append(_build_button(match.group(1), match.group(2), button_id, line_no))
        total += len(row)
        if total > MAX_BUTTONS:
            raise FormulaSyntaxError(f"more than {MAX_BUTTONS} buttons", line=line_no)
        grid.append(row)
    return grid


# ---------- Keyboard Renderer ----------
def alert_callback_data(code: str, button_id: str) -> str:
    return f"{CB_ALERT_PREFIX}{code}:{button_id}"


def parse_alert_callback(data: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split ``a:<code>:<id>`` into (code, id); None for anything else."""
    if not data or not data.startswith(CB_ALERT_PREFIX):
        return None
    parts = data.split(":")
    if len(parts) != 3 or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


def render_keyboard(post: Post, code: Optional[str] = None) -> InlineKeyboardMarkup:
    """Project a post's button grid onto an inline keyboard.

    ``code`` overrides the post code in callback/share payloads; previews pass
    PREVIEW_CODE.
    """
    code = code or post.code or PREVIEW_CODE
    rows: List[List[InlineKeyboardButton]] = []
    for row in post.buttons:
        rendered: List[InlineKeyboardButton] = []
        for b in row:
            if b.kind == BUTTON_URL:
                rendered.append(InlineKeyboardButton(b.text, url=b.target))
            elif b.kind == BUTTON_ALERT:
                rendered.append(InlineKeyboardButton(b.text, callback_data=alert_callback_data(code, b.id)))
            elif b.kind == BUTTON_SHARE:
                rendered.append(InlineKeyboardButton(b.text, switch_inline_query=code))
        if rendered:
            rows.append(rendered)
    return InlineKeyboardMarkup(rows)


def markup_or_none(markup: InlineKeyboardMarkup) -> Optional[InlineKeyboardMarkup]:
    return markup if markup.inline_keyboard else None


# ---------- Post Store ----------
class Base(DeclarativeBase):
    pass


class PostRecord(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_DRAFT)
    media_type: Mapped[str] = mapped_column(String(16), nullable=False, default=MEDIA_TEXT)
    file_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    caption: Mapped[str] = mapped_column(Text, nullable=False, default="")
    buttons: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_owner_status", "owner_id", "status"),
        # One draft per owner; an edit draft shares its code with the published original.
        Index(
            "uq_posts_owner_draft",
            "owner_id",
            unique=True,
            sqlite_where=text("status = 'draft'"),
            postgresql_where=text("status = 'draft'"),
        ),
        Index(
            "uq_posts_published_code",
            "code",
            unique=True,
            sqlite_where=text("status = 'published'"),
            postgresql_where=text("status = 'published'"),
        ),
    )


def _to_post(record: PostRecord) -> Post:
    return Post(
        id=record.id,
        owner_id=record.owner_id,
        status=record.status,
        code=record.code,
        media_type=record.media_type or MEDIA_TEXT,
        file_id=record.file_id,
        caption=record.caption or "",
        buttons=load_grid(record.buttons),
        created_at=record.created_at,
    )


class PostStore:
    """Owns post rows; every mutation runs in its own transaction."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> "PostStore":
        return cls(create_engine(url))

    def init_schema(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to create schema: {e}") from e

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Storage error: %s", e)
            raise StorageError(str(e)) from e

    @staticmethod
    def _draft_record(session: Session, owner_id: int) -> Optional[PostRecord]:
        stmt = select(PostRecord).where(
            PostRecord.owner_id == owner_id, PostRecord.status == STATUS_DRAFT
        )
        return session.scalars(stmt).first()

    def get_draft(self, owner_id: int) -> Optional[Post]:
        with self._transaction() as session:
            record = self._draft_record(session, owner_id)
            return _to_post(record) if record else None

    def reset_draft(self, owner_id: int, seed: Optional[Post] = None) -> Post:
        """Replace the owner's draft with a blank one, or a copy of ``seed``."""
        with self._transaction() as session:
            session.execute(
                delete(PostRecord).where(
                    PostRecord.owner_id == owner_id, PostRecord.status == STATUS_DRAFT
                )
            )
            record = PostRecord(owner_id=owner_id, status=STATUS_DRAFT, created_at=utcnow())
            if seed is None:
                record.media_type = MEDIA_TEXT
                record.caption = ""
                record.buttons = "[]"
            else:
                record.code = seed.code
                record.media_type = seed.media_type
                record.file_id = seed.file_id
                record.caption = seed.caption
                record.buttons = dump_grid(seed.buttons)
            session.add(record)
            session.flush()
            return _to_post(record)

    def _update_draft(self, owner_id: int, **values: Any) -> bool:
        with self._transaction() as session:
            result = session.execute(
                sql_update(PostRecord)
                .where(PostRecord.owner_id == owner_id, PostRecord.status == STATUS_DRAFT)
                .values(**values)
            )
            return result.rowcount > 0

    def set_content(self, owner_id: int, media_type: str, file_id: Optional[str], caption: str) -> bool:
        """Set the draft's media and caption; False when there is no draft."""
        return self._update_draft(owner_id, media_type=media_type, file_id=file_id, caption=caption)

    def set_buttons(self, owner_id: int, grid: ButtonGrid) -> bool:
        return self._update_draft(owner_id, buttons=dump_grid(grid))

    def load_published_by_code(self, code: str) -> Optional[Post]:
        with self._transaction() as session:
            stmt = select(PostRecord).where(
                PostRecord.code == code, PostRecord.status == STATUS_PUBLISHED
            )
            record = session.scalars(stmt).first()
            return _to_post(record) if record else None

    def publish(self, owner_id: int) -> Optional[str]:
        """Publish the owner's draft and return its code (None without a draft).

        An edit draft overwrites the published row it was loaded from; a fresh
        draft is promoted under a newly minted code. A code collision is retried
        with a new code.
        """
        for attempt in range(1, CODE_MINT_ATTEMPTS + 1):
            try:
                with self._sessions.begin() as session:
                    draft = self._draft_record(session, owner_id)
                    if draft is None:
                        return None
                    if not draft.caption and not draft.file_id:
                        raise EmptyPostError()
                    if draft.code:
                        return self._publish_edit(session, draft)
                    code = generate_code()
                    draft.code = code
                    draft.status = STATUS_PUBLISHED
                return code
            except IntegrityError as e:
                if attempt == CODE_MINT_ATTEMPTS:
                    logger.error("Publishing failed for owner %s: %s", owner_id, e)
                    raise StorageError(str(e)) from e
                logger.warning("Code collision while publishing for owner %s, retrying", owner_id)
            except SQLAlchemyError as e:
                logger.error("Publishing failed for owner %s: %s", owner_id, e)
                raise StorageError(str(e)) from e
        return None

    @staticmethod
    def _publish_edit(session: Session, draft: PostRecord) -> str:
        stmt = select(PostRecord).where(
            PostRecord.code == draft.code,
            PostRecord.owner_id == draft.owner_id,
            PostRecord.status == STATUS_PUBLISHED,
        )
        original = session.scalars(stmt).first()
        if original is None:
            # Original was deleted while being edited; keep the code.
            draft.status = STATUS_PUBLISHED
            return draft.code
        original.media_type = draft.media_type
        original.file_id = draft.file_id
        original.caption = draft.caption
        original.buttons = draft.buttons
        session.delete(draft)
        return draft.code

    def delete_by_code_and_owner(self, code: str, owner_id: int) -> bool:
        with self._transaction() as session:
            result = session.execute(
                delete(PostRecord).where(
                    PostRecord.code == code,
                    PostRecord.owner_id == owner_id,
                    PostRecord.status == STATUS_PUBLISHED,
                )
            )
            return result.rowcount > 0

    def list_published_by_owner(self, owner_id: int) -> List[PostSummary]:
        with self._transaction() as session:
            stmt = (
                select(PostRecord.code, PostRecord.caption, PostRecord.media_type)
                .where(PostRecord.owner_id == owner_id, PostRecord.status == STATUS_PUBLISHED)
                .order_by(PostRecord.created_at.desc(), PostRecord.id.desc())
            )
            return [
                PostSummary(
                    code=code,
                    caption_preview=truncate(caption or "", LIST_PREVIEW_LENGTH),
                    media_type=media_type,
                )
                for code, caption, media_type in session.execute(stmt)
            ]


# ---------- Draft Lifecycle Controller ----------
class DraftState(str, Enum):
    NO_DRAFT = "no_draft"
    AWAITING_CONTENT = "awaiting_content"
    AWAITING_BUTTONS = "awaiting_buttons"
    READY = "ready"


def draft_state(draft: Optional[Post]) -> DraftState:
    if draft is None:
        return DraftState.NO_DRAFT
    if not draft.has_content:
        return DraftState.AWAITING_CONTENT
    if not any(draft.buttons):
        return DraftState.AWAITING_BUTTONS
    return DraftState.READY


class DraftController:
    """Per-owner draft state machine on top of PostStore."""

    # What an ingested text message was taken as
    INPUT_CONTENT = "content"
    INPUT_BUTTONS = "buttons"

    def __init__(self, store: PostStore, allowlist: FrozenSet[int]):
        self.store = store
        self.allowlist = frozenset(allowlist)

    def is_allowed(self, user_id: Optional[int]) -> bool:
        return user_id is not None and user_id in self.allowlist

    def authorize(self, user_id: Optional[int]) -> None:
        if not self.is_allowed(user_id):
            raise AuthorizationError()

    def state(self, owner_id: int) -> DraftState:
        return draft_state(self.store.get_draft(owner_id))

    def current_draft(self, owner_id: int) -> Post:
        self.authorize(owner_id)
        draft = self.store.get_draft(owner_id)
        if draft is None:
            raise NoDraftError()
        return draft

    def new_draft(self, owner_id: int) -> Post:
        self.authorize(owner_id)
        return self.store.reset_draft(owner_id)

    def ingest_text(self, owner_id: int, text_value: str) -> str:
        """Take text as content while the draft is blank, otherwise as a formula."""
        draft = self.current_draft(owner_id)
        if draft_state(draft) == DraftState.AWAITING_CONTENT:
            self.store.set_content(owner_id, MEDIA_TEXT, None, text_value)
            return self.INPUT_CONTENT
        grid = compile_formula(text_value)
        self.store.set_buttons(owner_id, grid)
        return self.INPUT_BUTTONS

    def ingest_photo(self, owner_id: int, file_id: str, caption: Optional[str]) -> None:
        self.current_draft(owner_id)
        self.store.set_content(owner_id, MEDIA_PHOTO, file_id, caption or "")

    def edit(self, owner_id: int, code: str) -> Post:
        self.authorize(owner_id)
        post = self.store.load_published_by_code(code)
        if post is None:
            raise NotFoundError(code)
        if post.owner_id != owner_id:
            raise NotFoundError(code, foreign=True)
        return self.store.reset_draft(owner_id, seed=post)

    def save(self, owner_id: int) -> Post:
        self.authorize(owner_id)
        code = self.store.publish(owner_id)
        if code is None:
            raise NoDraftError()
        post = self.store.load_published_by_code(code)
        if post is None:
            raise StorageError(f"published post {code} could not be reloaded")
        return post

    def delete(self, owner_id: int, code: str) -> None:
        self.authorize(owner_id)
        if not self.store.delete_by_code_and_owner(code, owner_id):
            raise NotFoundError(code)

    def list_posts(self, owner_id: int) -> List[PostSummary]:
        self.authorize(owner_id)
        return self.store.list_published_by_owner(owner_id)

    def find_published(self, code: str) -> Optional[Post]:
        if not code or code == PREVIEW_CODE:
            return None
        return self.store.load_published_by_code(code)

    def resolve_alert(self, code: str, button_id: str) -> Optional[str]:
        """Return the popup text for an alert button, or None if it is gone."""
        post = self.find_published(code)
        if post is None:
            return None
        button = post.find_button(button_id)
        if button is None or button.kind != BUTTON_ALERT:
            return None
        return button.message


# ---------- Configuration ----------
def parse_id_list(raw: str) -> Set[int]:
    return {int(x) for x in re.split(r"[\,\s]+", (raw or "").strip()) if x.isdigit()}


@dataclass(frozen=True)
class BotConfig:
    bot_token: str
    allowlist: FrozenSet[int] = frozenset()
    allowlist_file: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    post_parse_mode: Optional[str] = DEFAULT_PARSE_MODE
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls) -> "BotConfig":
        token = os.getenv("BOT_TOKEN", "").strip()
        if not token:
            raise RuntimeError("BOT_TOKEN environment variable is required.")
        parse_mode = os.getenv("POST_PARSE_MODE", DEFAULT_PARSE_MODE).strip()
        if parse_mode.lower() in ("", "none"):
            parse_mode = None
        return cls(
            bot_token=token,
            allowlist=frozenset(parse_id_list(os.getenv("ALLOWLIST_IDS", os.getenv("ALLOWLIST", "")))),
            allowlist_file=os.getenv("ALLOWLIST_FILE") or None,
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            post_parse_mode=parse_mode,
            log_level=os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL,
        )


async def load_allowlist_file(path: Optional[str]) -> Set[int]:
    """Read allow-listed ids from a JSON file; tolerate missing or malformed files."""
    if not path:
        return set()
    if not os.path.exists(path):
        logger.warning("Allowlist file %s does not exist", path)
        return set()
    try:
        async with aiofiles.open(path, "r") as f:
            data = await f.read()
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
        return set()
    if not data.strip():
        return set()
    try:
        json_data = json.loads(data)
    except JSONDecodeError as e:
        logger.warning("Failed to parse %s: %s", path, e)
        return set()
    if isinstance(json_data, dict):
        json_data = json_data.get("allowlist", [])
    ids: Set[int] = set()
    for x in json_data if isinstance(json_data, list) else []:
        if isinstance(x, int) and not isinstance(x, bool):
            ids.add(x)
        elif isinstance(x, str) and x.strip().isdigit():
            ids.add(int(x.strip()))
    return ids


# ---------- Bot Helpers ----------
def get_controller(context: ContextTypes.DEFAULT_TYPE) -> DraftController:
    return context.bot_data["controller"]


def get_config(context: ContextTypes.DEFAULT_TYPE) -> BotConfig:
    return context.bot_data["config"]


def get_user_id(update: Update) -> Optional[int]:
    """Return the effective user id from update if available."""
    if update.effective_user:
        return update.effective_user.id
    return None


def command_code(context: ContextTypes.DEFAULT_TYPE) -> str:
    return normalize_code(" ".join(context.args or []))


async def ensure_allowed(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    """Check the user against the allowlist; inform user if blocked."""
    if get_controller(context).is_allowed(get_user_id(update)):
        return True
    if update.effective_message:
        await update.effective_message.reply_text(MESSAGES["ACCESS_DENIED"])
    return False


def reports_domain_errors(func: Callable) -> Callable:
    """Answer recoverable PostBotErrors with their message; StorageError propagates."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Any:
        try:
            return await func(update, context)
        except StorageError:
            raise
        except PostBotError as e:
            logger.info("%s for user %s: %s", type(e).__name__, get_user_id(update), e)
            if update.effective_message:
                await update.effective_message.reply_text(e.user_message())

    return wrapper


async def reply_with_post(
    message: Message,
    post: Post,
    keyboard: InlineKeyboardMarkup,
    parse_mode: Optional[str],
) -> None:
    """Send a post as a photo or text reply, retrying without markup on parse errors."""
    reply_markup = markup_or_none(keyboard)
    caption = post.caption
    if not post.is_photo and not caption:
        caption, parse_mode = MESSAGES["EMPTY_TEXT"], None

    async def _send(mode: Optional[str]) -> None:
        if post.is_photo:
            await message.reply_photo(
                post.file_id, caption=caption or None, reply_markup=reply_markup, parse_mode=mode
            )
        else:
            await message.reply_text(caption, reply_markup=reply_markup, parse_mode=mode)

    try:
        await _send(parse_mode)
    except BadRequest as e:
        if parse_mode is None:
            raise
        logger.warning("Post %s rejected with %s markup (%s); resending as plain text", post.code, parse_mode, e)
        await _send(None)


# ---------- Command Handlers ----------

# /start and /help; /start <CODE> doubles as a deep link to a post
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if command_code(context) not in ("", START_HELP_PARAMETER.upper()):
        await get_command(update, context)
        return
    await help_command(update, context)


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.effective_message.reply_text(MESSAGES["HELP_TEXT"], parse_mode="Markdown")


# /get <CODE>: send a published post to anyone
async def get_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    code = command_code(context)
    if not code:
        await update.effective_message.reply_text(MESSAGES["USAGE_GET"])
        return
    post = get_controller(context).find_published(code)
    if post is None:
        await update.effective_message.reply_text(MESSAGES["POST_NOT_FOUND"])
        return
    await reply_with_post(update.effective_message, post, render_keyboard(post), get_config(context).post_parse_mode)


@reports_domain_errors
async def new_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    get_controller(context).new_draft(get_user_id(update))
    await update.effective_message.reply_text(MESSAGES["DRAFT_RESET"])


@reports_domain_errors
async def preview_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    draft = get_controller(context).current_draft(get_user_id(update))
    keyboard = render_keyboard(draft, code=PREVIEW_CODE)
    await reply_with_post(update.effective_message, draft, keyboard, get_config(context).post_parse_mode)


@reports_domain_errors
async def save_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    try:
        post = get_controller(context).save(get_user_id(update))
    except NoDraftError:
        await update.effective_message.reply_text(MESSAGES["NO_DRAFT_TO_SAVE"])
        return
    await reply_with_post(update.effective_message, post, render_keyboard(post), get_config(context).post_parse_mode)
    await update.effective_message.reply_text(
        MESSAGES["POST_SAVED"].format(username=context.bot.username, code=post.code),
        parse_mode="Markdown",
    )


@reports_domain_errors
async def edit_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    code = command_code(context)
    if not code:
        await update.effective_message.reply_text(MESSAGES["USAGE_EDIT"])
        return
    get_controller(context).edit(get_user_id(update), code)
    await update.effective_message.reply_text(MESSAGES["POST_LOADED"].format(code=code))


@reports_domain_errors
async def list_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    posts = get_controller(context).list_posts(get_user_id(update))
    if not posts:
        await update.effective_message.reply_text(MESSAGES["LIST_EMPTY"])
        return
    lines = [
        MESSAGES["LIST_ITEM"].format(code=p.code, preview=p.caption_preview or MESSAGES["PHOTO_LABEL"])
        for p in posts
    ]
    await update.effective_message.reply_text(MESSAGES["LIST_HEADER"] + "\n\n" + "\n".join(lines))


@reports_domain_errors
async def delete_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    code = command_code(context)
    if not code:
        await update.effective_message.reply_text(MESSAGES["USAGE_DELETE"])
        return
    try:
        get_controller(context).delete(get_user_id(update), code)
    except NotFoundError:
        await update.effective_message.reply_text(MESSAGES["POST_NOT_FOUND_OR_FOREIGN"])
        return
    await update.effective_message.reply_text(MESSAGES["POST_DELETED"].format(code=code))


# ----- Draft Input -----
@reports_domain_errors
async def text_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    taken_as = get_controller(context).ingest_text(get_user_id(update), update.effective_message.text)
    if taken_as == DraftController.INPUT_CONTENT:
        await update.effective_message.reply_text(MESSAGES["TEXT_ACCEPTED"])
    else:
        await update.effective_message.reply_text(MESSAGES["BUTTONS_SET"])


@reports_domain_errors
async def photo_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not await ensure_allowed(update, context):
        return
    photo = update.effective_message.photo[-1]
    get_controller(context).ingest_photo(get_user_id(update), photo.file_id, update.effective_message.caption)
    await update.effective_message.reply_text(MESSAGES["PHOTO_ACCEPTED"])


# ----- Alert Buttons & Inline Mode -----
async def alert_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    parsed = parse_alert_callback(query.data)
    if parsed is None:
        await query.answer()
        return
    code, button_id = parsed
    if code == PREVIEW_CODE:
        await query.answer(MESSAGES["PREVIEW_INACTIVE"], show_alert=True)
        return
    message = get_controller(context).resolve_alert(code, button_id)
    if message is None:
        await query.answer(MESSAGES["BUTTON_UNAVAILABLE"], show_alert=True)
        return
    await query.answer(message or MESSAGES["ALERT_FALLBACK"], show_alert=True)


async def other_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    await update.callback_query.answer()


def build_inline_result(post: Post, parse_mode: Optional[str]):
    reply_markup = markup_or_none(render_keyboard(post))
    if post.is_photo:
        return InlineQueryResultCachedPhoto(
            id=post.code,
            photo_file_id=post.file_id,
            caption=post.caption or None,
            parse_mode=parse_mode,
            reply_markup=reply_markup,
        )
    return InlineQueryResultArticle(
        id=post.code,
        title=MESSAGES["INLINE_TITLE"],
        input_message_content=InputTextMessageContent(post.caption, parse_mode=parse_mode),
        reply_markup=reply_markup,
        description=truncate(post.caption, INLINE_DESCRIPTION_LENGTH),
    )


async def inline_query(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.inline_query
    code = normalize_code(query.query)
    if not code:
        await query.answer([], cache_time=INLINE_CACHE_EMPTY)
        return
    if code == PREVIEW_CODE:
        await query.answer(
            [],
            cache_time=INLINE_CACHE_EMPTY,
            button=InlineQueryResultsButton(text=MESSAGES["PREVIEW_INACTIVE_SHORT"], start_parameter=START_HELP_PARAMETER),
        )
        return
    post = get_controller(context).find_published(code)
    if post is None:
        await query.answer([], cache_time=INLINE_CACHE_EMPTY)
        return
    parse_mode = get_config(context).post_parse_mode
    try:
        await query.answer([build_inline_result(post, parse_mode)], cache_time=INLINE_CACHE_HIT)
    except BadRequest as e:
        if parse_mode is None:
            raise
        logger.warning("Inline result %s rejected with %s markup (%s); answering as plain text", post.code, parse_mode, e)
        await query.answer([build_inline_result(post, None)], cache_time=INLINE_CACHE_HIT)


# ----- Global Error Handler -----
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    uid = None
    if isinstance(update, Update) and update.effective_user:
        uid = update.effective_user.id
    logger.error("Error for user %s: %s", uid, context.error, exc_info=context.error)
    if not isinstance(update, Update):
        return
    try:
        if update.callback_query:
            await update.callback_query.answer(MESSAGES["GENERIC_FAILURE"], show_alert=True)
        elif update.effective_message:
            await update.effective_message.reply_text(MESSAGES["GENERIC_FAILURE"])
    except TelegramError as e:
        logger.warning("Failed to report error to user %s: %s", uid, e)


# ---------- Main Function ----------
def build_application(config: BotConfig, store: PostStore) -> Application:
    application = Application.builder().token(config.bot_token).build()
    application.bot_data["config"] = config
    application.bot_data["controller"] = DraftController(store, config.allowlist)

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("get", get_command))
    application.add_handler(CommandHandler("new", new_command))
    application.add_handler(CommandHandler("preview", preview_command))
    application.add_handler(CommandHandler("save", save_command))
    application.add_handler(CommandHandler("edit", edit_command))
    application.add_handler(CommandHandler("list", list_command))
    application.add_handler(CommandHandler("delete", delete_command))

    private = filters.ChatType.PRIVATE
    application.add_handler(MessageHandler(private & filters.TEXT & ~filters.COMMAND, text_message))
    application.add_handler(MessageHandler(private & filters.PHOTO, photo_message))

    application.add_handler(CallbackQueryHandler(alert_callback, pattern=f"^{CB_ALERT_PREFIX}"))
    application.add_handler(CallbackQueryHandler(other_callback))
    application.add_handler(InlineQueryHandler(inline_query))

    application.add_error_handler(error_handler)
    return application


def main():
    load_dotenv()
    config = BotConfig.from_env()
    logging.getLogger().setLevel(config.log_level)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    file_ids = loop.run_until_complete(load_allowlist_file(config.allowlist_file))
    if file_ids:
        config = replace(config, allowlist=config.allowlist | frozenset(file_ids))

    if not config.allowlist:
        logger.warning("ALLOWLIST is empty; nobody will be able to author posts.")

    store = PostStore.from_url(config.database_url)
    store.init_schema()

    application = build_application(config, store)
    logger.info("Bot started (long polling)")
    try:
        application.run_polling()
    finally:
        store.dispose()


if __name__ == "__main__":
    main()
