"""
auth/validator.py -- Rule-based field validation, sanitization and CSRF tokens.

Rules are small frozen dataclasses rather than "required|min:8" strings:

    rules = {
        "email": [Required(), Email(), Unique("users")],
        "password": [Required(), Min(8), Confirmed()],
    }
    result = Validator(store).validate(data, rules)
    if not result.valid:
        ...  # result.errors == {"email": ["Email already exists"], ...}

Every rule of every field runs; a field collects all of its messages in rule
order. Apart from Required and Confirmed, rules pass on empty values so that
optional fields are only checked when supplied.

Unique / Exists delegate to UserStore.exists(); File / Image check uploads
against the size and extension allow-lists from Settings and decode images
with Pillow.

The module-level helpers (sanitize, generate_csrf, validate_csrf,
validate_phone, validate_strong_password) are stateless;
the CSRF pair reads and writes the caller's session mapping explicitly.

Layer rule: no imports from api/ or leads/.
"""

from __future__ import annotations

import hmac
import html
import io
import re
import secrets
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import TYPE_CHECKING, Any

from email_validator import EmailNotValidError, validate_email
from PIL import Image as PILImage
from pydantic import AnyUrl, TypeAdapter, ValidationError

from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import UserStore

CSRF_SESSION_KEY = "csrf_token"

_url_adapter = TypeAdapter(AnyUrl)

_NUMERIC_RE = re.compile(r"\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
_INTEGER_RE = re.compile(r"[+-]?(0|[1-9]\d*)")
_ALPHA_RE = re.compile(r"[a-zA-Z]+")
_ALPHA_NUM_RE = re.compile(r"[a-zA-Z0-9]+")
_ALPHA_DASH_RE = re.compile(r"[a-zA-Z0-9_-]+")
_PHONE_RE = re.compile(r"\+?[1-9]\d{0,15}")
_STRONG_PASSWORD_RE = re.compile(r"(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}")

# Characters kept by sanitize(..., "email") and sanitize(..., "url").
_EMAIL_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!#$%&'*+-=?^_`{|}~@.[]")
_URL_CHARS = _EMAIL_CHARS | frozenset("$-_.+!*'(),{}|\\^~[]`<>#%\";/?:@&=")


# ---------------------------------------------------------------------------
# Result and upload containers
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    valid: bool
    errors: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class UploadedFile:
    """An uploaded file as seen by the File / Image rules.

    error is set by the request layer when the upload itself failed (e.g.
    the client disconnected mid-body); the rules report it and stop.
    """

    filename: str
    content: bytes
    error: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return PurePath(self.filename).suffix.lstrip(".").lower()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(name: str) -> str:
    """Message label for a field: first_name -> First name."""
    text = name.replace("_", " ")
    return text[:1].upper() + text[1:]


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (str, bytes, list, tuple, dict, set, frozenset)):
        return len(value) == 0
    return False


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class Rule:
    """Base class for validation rules.

    check() returns the error messages this rule produces for one field;
    an empty list means the value passed.
    """

    def check(self, name: str, value: Any, data: Mapping[str, Any], validator: Validator) -> list[str]:
        raise NotImplementedError


@dataclass(frozen=True)
class Required(Rule):
    def check(self, name, value, data, validator):
        if isinstance(value, str):
            value = value.strip()
        if _is_empty(value):
            return [f"{_label(name)} is required"]
        return []


@dataclass(frozen=True)
class Min(Rule):
    length: int

    def check(self, name, value, data, validator):
        if not _is_empty(value) and len(_as_text(value)) < self.length:
            return [f"{_label(name)} must be at least {self.length} characters"]
        return []


@dataclass(frozen=True)
class Max(Rule):
    length: int

    def check(self, name, value, data, validator):
        if not _is_empty(value) and len(_as_text(value)) > self.length:
            return [f"{_label(name)} must be no more than {self.length} characters"]
        return []


@dataclass(frozen=True)
class Email(Rule):
    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        text = _as_text(value)
        # Addresses sanitize() would rewrite (non-ASCII, "/") could never be looked up again.
        if not text.isascii() or normalize_email(text) != text.strip():
            return ["Please enter a valid email address"]
        try:
            validate_email(text, check_deliverability=False, allow_smtputf8=False)
        except EmailNotValidError:
            return ["Please enter a valid email address"]
        return []


@dataclass(frozen=True)
class Numeric(Rule):
    def check(self, name, value, data, validator):
        if _is_empty(value) or (isinstance(value, (int, float)) and not isinstance(value, bool)):
            return []
        if not _NUMERIC_RE.fullmatch(_as_text(value)):
            return [f"{_label(name)} must be a number"]
        return []


@dataclass(frozen=True)
class Integer(Rule):
    def check(self, name, value, data, validator):
        if _is_empty(value) or (isinstance(value, int) and not isinstance(value, bool)):
            return []
        if not _INTEGER_RE.fullmatch(_as_text(value)):
            return [f"{_label(name)} must be an integer"]
        return []


@dataclass(frozen=True)
class Url(Rule):
    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        try:
            _url_adapter.validate_python(_as_text(value))
        except ValidationError:
            return ["Please enter a valid URL"]
        return []


@dataclass(frozen=True)
class Alpha(Rule):
    def check(self, name, value, data, validator):
        if not _is_empty(value) and not _ALPHA_RE.fullmatch(_as_text(value)):
            return [f"{_label(name)} may only contain letters"]
        return []


@dataclass(frozen=True)
class AlphaNum(Rule):
    def check(self, name, value, data, validator):
        if not _is_empty(value) and not _ALPHA_NUM_RE.fullmatch(_as_text(value)):
            return [f"{_label(name)} may only contain letters and numbers"]
        return []


@dataclass(frozen=True)
class AlphaDash(Rule):
    def check(self, name, value, data, validator):
        if not _is_empty(value) and not _ALPHA_DASH_RE.fullmatch(_as_text(value)):
            return [f"{_label(name)} may only contain letters, numbers, dashes and underscores"]
        return []


@dataclass(frozen=True)
class Phone(Rule):
    """Optional leading +, then 1-16 digits not starting with 0. Spaces, dashes, dots and parentheses are ignored."""

    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        if not validate_phone(re.sub(r"[\s().-]", "", _as_text(value))):
            return ["Please enter a valid phone number"]
        return []


@dataclass(frozen=True)
class StrongPassword(Rule):
    def check(self, name, value, data, validator):
        if not _is_empty(value) and not validate_strong_password(_as_text(value)):
            return [
                f"{_label(name)} must contain upper and lower case letters, a number and one of @$!%*?&"
            ]
        return []


@dataclass(frozen=True)
class Regex(Rule):
    """Passes when pattern matches anywhere in the value (re.search)."""

    pattern: str

    def check(self, name, value, data, validator):
        if not _is_empty(value) and not re.search(self.pattern, _as_text(value)):
            return [f"{_label(name)} format is invalid"]
        return []


@dataclass(frozen=True)
class Date(Rule):
    """ISO 8601 date or datetime ("2026-03-01", "2026-03-01T09:30:00")."""

    def check(self, name, value, data, validator):
        if _is_empty(value) or isinstance(value, (date, datetime)):
            return []
        try:
            datetime.fromisoformat(_as_text(value))
        except ValueError:
            return ["Please enter a valid date"]
        return []


@dataclass(frozen=True)
class DateFormat(Rule):
    """Value must parse with strptime(fmt) and render back identically."""

    fmt: str

    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        text = _as_text(value)
        try:
            parsed = datetime.strptime(text, self.fmt)
        except ValueError:
            return [f"Date must be in format: {self.fmt}"]
        if parsed.strftime(self.fmt) != text:
            return [f"Date must be in format: {self.fmt}"]
        return []


@dataclass(frozen=True)
class In(Rule):
    values: tuple[str, ...]

    def check(self, name, value, data, validator):
        if not _is_empty(value) and _as_text(value) not in {str(v) for v in self.values}:
            return [f"{_label(name)} must be one of: {', '.join(map(str, self.values))}"]
        return []


@dataclass(frozen=True)
class NotIn(Rule):
    values: tuple[str, ...]

    def check(self, name, value, data, validator):
        if not _is_empty(value) and _as_text(value) in {str(v) for v in self.values}:
            return [f"{_label(name)} cannot be: {', '.join(map(str, self.values))}"]
        return []


@dataclass(frozen=True)
class Confirmed(Rule):
    """Value must equal data[name + "_confirmation"]. Runs even on empty values."""

    def check(self, name, value, data, validator):
        if value != data.get(f"{name}_confirmation", ""):
            return [f"{_label(name)} confirmation does not match"]
        return []


@dataclass(frozen=True)
class Unique(Rule):
    """No row in table may already hold this value (column defaults to the field name)."""

    table: str
    column: str | None = None
    ignore_id: int | None = None

    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        if validator.store.exists(self.table, self.column or name, value, ignore_id=self.ignore_id):
            return [f"{_label(name)} already exists"]
        return []


@dataclass(frozen=True)
class Exists(Rule):
    """Some row in table must hold this value."""

    table: str
    column: str | None = None

    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        if not validator.store.exists(self.table, self.column or name, value):
            return [f"Selected {name.replace('_', ' ')} is invalid"]
        return []


@dataclass(frozen=True)
class File(Rule):
    """Upload must succeed, fit MAX_FILE_SIZE and carry an allowed extension."""

    def check(self, name, value, data, validator):
        if _is_empty(value):
            return []
        if not isinstance(value, UploadedFile) or value.error:
            return ["File upload failed"]
        settings = validator.settings
        errors: list[str] = []
        if value.size > settings.max_file_size:
            errors.append(f"File size must be less than {settings.max_file_size / 1024 / 1024:g}MB")
        allowed = settings.allowed_upload_types
        if value.extension not in allowed:
            errors.append(f"File type not allowed. Allowed types: {', '.join(allowed)}")
        return errors


@dataclass(frozen=True)
class Image(Rule):
    """File checks first; then the payload must decode as an image of bounded size."""

    def check(self, name, value, data, validator):
        errors = File().check(name, value, data, validator)
        if errors or _is_empty(value):
            return errors

        settings = validator.settings
        try:
            with PILImage.open(io.BytesIO(value.content)) as img:
                width, height = img.size
                img.verify()
        except (OSError, SyntaxError, ValueError, PILImage.DecompressionBombError):
            return ["File must be a valid image"]

        limit = settings.max_image_dimension
        if width > limit or height > limit:
            errors.append(f"Image dimensions too large (max {limit}x{limit} pixels)")
        if value.extension not in settings.allowed_image_types:
            # A decodable image still needs an image extension (no .pdf-named PNGs).
            errors.append(f"Image type not allowed. Allowed types: {', '.join(settings.allowed_image_types)}")
        return errors


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class Validator:
    """Applies rule lists to a data mapping.

    store is only needed for Unique / Exists; settings defaults to the
    application settings singleton.
    """

    def __init__(self, store: UserStore | None = None, settings: Settings | None = None) -> None:
        self._store = store
        self.settings = settings or get_settings()

    @property
    def store(self) -> UserStore:
        if self._store is None:
            raise RuntimeError("Unique/Exists rules need a Validator constructed with a store.")
        return self._store

    def validate(self, data: Mapping[str, Any], rules: Mapping[str, Sequence[Rule]]) -> ValidationResult:
        errors: dict[str, list[str]] = {}
        for name, field_rules in rules.items():
            value = data.get(name, "")
            for rule in field_rules:
                messages = rule.check(name, value, data, self)
                if messages:
                    errors.setdefault(name, []).extend(messages)
        return ValidationResult(valid=not errors, errors=errors)


# ---------------------------------------------------------------------------
# Stateless helpers
# ---------------------------------------------------------------------------


def _keep(text: str, allowed: Iterable[str]) -> str:
    allowed = set(allowed)
    return "".join(ch for ch in text if ch in allowed)


def normalize_email(value: Any) -> str:
    """Trimmed email, or "" when sanitize() would change it (so it cannot match a stored row)."""
    text = _as_text(value).strip() if value is not None else ""
    return text if sanitize(text, "email") == text else ""


def sanitize(value: Any, kind: str = "string") -> str:
    """Clean a user-supplied value for storage or display.

    string (default, also used for unknown kinds): trim + HTML-escape,
        quotes included.
    email / url: trim, then drop characters that cannot appear in one.
    int: keep digits and signs. float: digits, signs and the decimal point.
    """
    if value is None:
        return ""
    text = _as_text(value)
    if kind == "email":
        return _keep(text.strip(), _EMAIL_CHARS)
    if kind == "url":
        return _keep(text.strip(), _URL_CHARS)
    if kind == "int":
        return _keep(text, "0123456789+-")
    if kind == "float":
        return _keep(text, "0123456789+-.")
    return html.escape(text.strip(), quote=True)


def generate_csrf(state: MutableMapping[str, Any]) -> str:
    """Return the session's CSRF token, creating it on first use."""
    token = state.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_hex(32)
        state[CSRF_SESSION_KEY] = token
    return token


def validate_csrf(state: Mapping[str, Any], token: Any) -> bool:
    """Constant-time comparison against the session's token. False if none was issued."""
    expected = state.get(CSRF_SESSION_KEY)
    if not expected or not isinstance(token, str):
        return False
    return hmac.compare_digest(expected.encode(), token.encode())


def validate_phone(phone: str) -> bool:
    return bool(_PHONE_RE.fullmatch(phone or ""))


def validate_strong_password(password: str) -> bool:
    """>= 8 chars from [A-Za-z0-9@$!%*?&] with a lower, an upper, a digit and a symbol."""
    return bool(_STRONG_PASSWORD_RE.fullmatch(password or ""))
