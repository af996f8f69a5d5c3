"""
Identity provider: who is signed in.

The tracker only needs the current user's id and a change notification;
``InMemoryIdentityProvider`` is the local implementation used by the sync
client and the tests. Failures carry an ``AuthErrorCode`` that maps to a
user-facing message.
"""

import logging
import re
import secrets
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Optional

from passlib.context import CryptContext
from pydantic import BaseModel

from errors import HabitTrackerError, ValidationError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class AuthErrorCode(str, Enum):
    EMAIL_IN_USE = "EmailInUse"
    INVALID_EMAIL = "InvalidEmail"
    WEAK_PASSWORD = "WeakPassword"
    USER_NOT_FOUND = "UserNotFound"
    WRONG_PASSWORD = "WrongPassword"
    RATE_LIMITED = "RateLimited"
    NETWORK_ERROR = "NetworkError"
    UNKNOWN = "Unknown"


ERROR_MESSAGES = {
    AuthErrorCode.EMAIL_IN_USE: "An account with this email already exists.",
    AuthErrorCode.INVALID_EMAIL: "Please enter a valid email address.",
    AuthErrorCode.WEAK_PASSWORD: "Password should be at least 6 characters long.",
    AuthErrorCode.USER_NOT_FOUND: "No account found with this email address.",
    AuthErrorCode.WRONG_PASSWORD: "Incorrect password.",
    AuthErrorCode.RATE_LIMITED: "Too many failed attempts. Please try again later.",
    AuthErrorCode.NETWORK_ERROR: "Network error. Please check your connection.",
    AuthErrorCode.UNKNOWN: "An error occurred. Please try again.",
}

_STATUS_CODES = {
    AuthErrorCode.EMAIL_IN_USE: 409,
    AuthErrorCode.INVALID_EMAIL: 400,
    AuthErrorCode.WEAK_PASSWORD: 400,
    AuthErrorCode.USER_NOT_FOUND: 401,
    AuthErrorCode.WRONG_PASSWORD: 401,
    AuthErrorCode.RATE_LIMITED: 429,
    AuthErrorCode.NETWORK_ERROR: 503,
}


def error_message(code) -> str:
    try:
        return ERROR_MESSAGES[AuthErrorCode(code)]
    except ValueError:
        return ERROR_MESSAGES[AuthErrorCode.UNKNOWN]


class IdentityError(HabitTrackerError):
    def __init__(self, code: AuthErrorCode, message: str = None):
        self.code = AuthErrorCode(code)
        self.status_code = _STATUS_CODES.get(self.code, 500)
        super().__init__(message or error_message(self.code))


class User(BaseModel):
    id: str
    email: str
    display_name: str = ""


UserListener = Callable[[Optional[User]], None]


class IdentityProvider(ABC):

    @abstractmethod
    def current_user(self) -> Optional[User]:
        ...

    @abstractmethod
    def on_change(self, callback: UserListener) -> Callable[[], None]:
        ...

    @abstractmethod
    def sign_up(self, email: str, password: str, display_name: str = "",
                confirm_password: Optional[str] = None) -> User:
        ...

    @abstractmethod
    def sign_in(self, email: str, password: str) -> User:
        ...

    @abstractmethod
    def sign_out(self) -> None:
        ...

    @abstractmethod
    def reset_password(self, email: str) -> str:
        ...


class InMemoryIdentityProvider(IdentityProvider):
    def __init__(self, max_failed_attempts: int = 5, password_context: Optional[CryptContext] = None):
        self.max_failed_attempts = max_failed_attempts
        self.pwd_context = password_context if password_context is not None else pwd_context
        self._accounts: Dict[str, dict] = {}
        self._failures: Dict[str, int] = {}
        self._reset_tokens: Dict[str, str] = {}
        self._listeners: List[UserListener] = []
        self._user: Optional[User] = None

    def current_user(self) -> Optional[User]:
        return self._user

    def on_change(self, callback: UserListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def sign_up(self, email, password, display_name="", confirm_password=None) -> User:
        email = self._check_email(email)
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("Passwords do not match")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise IdentityError(AuthErrorCode.WEAK_PASSWORD)
        if email in self._accounts:
            raise IdentityError(AuthErrorCode.EMAIL_IN_USE)
        account = {
            "user": User(id=uuid.uuid4().hex, email=email, display_name=display_name or ""),
            "password_hash": self.pwd_context.hash(password),
        }
        self._accounts[email] = account
        logger.info("Registered %s", email)
        self._set_user(account["user"])
        return account["user"]

    def sign_in(self, email, password) -> User:
        email = self._check_email(email)
        account = self._accounts.get(email)
        if account is None:
            raise IdentityError(AuthErrorCode.USER_NOT_FOUND)
        if self._failures.get(email, 0) >= self.max_failed_attempts:
            raise IdentityError(AuthErrorCode.RATE_LIMITED)
        if not self.pwd_context.verify(password or "", account["password_hash"]):
            self._failures[email] = self._failures.get(email, 0) + 1
            raise IdentityError(AuthErrorCode.WRONG_PASSWORD)
        self._failures.pop(email, None)
        self._set_user(account["user"])
        return account["user"]

    def sign_out(self) -> None:
        self._set_user(None)

    def reset_password(self, email) -> str:
        """Issue a reset token; delivering it is someone else's job."""
        email = self._check_email(email)
        if email not in self._accounts:
            raise IdentityError(AuthErrorCode.USER_NOT_FOUND)
        token = secrets.token_urlsafe(24)
        self._reset_tokens[token] = email
        return token

    def confirm_password_reset(self, token: str, new_password: str) -> None:
        email = self._reset_tokens.pop(token, None)
        if email is None:
            raise ValidationError("Invalid or expired reset token")
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise IdentityError(AuthErrorCode.WEAK_PASSWORD)
        account = self._accounts[email]
        account["password_hash"] = self.pwd_context.hash(new_password)
        self._failures.pop(email, None)

    @staticmethod
    def _check_email(email) -> str:
        email = (email or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise IdentityError(AuthErrorCode.INVALID_EMAIL)
        return email

    def _set_user(self, user: Optional[User]) -> None:
        if user == self._user:
            return
        self._user = user
        for listener in list(self._listeners):
            try:
                listener(user)
            except Exception:
                logger.exception("Identity listener failed")
