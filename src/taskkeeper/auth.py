"""Account registration, password hashing and bearer token handling."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import re
from typing import Any

import bcrypt
import jwt
from jwt import PyJWTError

from taskkeeper.domain.models import UserRole, parse_role
from taskkeeper.errors import AuthenticationError, InputValidationError
from taskkeeper.observability import get_logger
from taskkeeper.repository import UserRepository

_log = get_logger('taskkeeper.auth')

_EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$')
_MIN_PASSWORD_LENGTH = 6
# bcrypt only hashes the first 72 bytes.
_MAX_PASSWORD_BYTES = 72
_JWT_ALGORITHM = 'HS256'


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class UserView:
    user_id: str
    email: str
    role: UserRole
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: UserView


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))
    except ValueError:
        # Malformed stored hash.
        return False


def validate_email(email: str) -> str:
    text = str(email or '').strip()
    if not text:
        raise InputValidationError('email is required', field='email')
    if not _EMAIL_RE.match(text):
        raise InputValidationError('invalid email format', field='email')
    return text.lower()


def validate_password(password: str) -> str:
    text = str(password or '')
    if not text:
        raise InputValidationError('password is required', field='password')
    if len(text) < _MIN_PASSWORD_LENGTH:
        raise InputValidationError(
            f'password must be at least {_MIN_PASSWORD_LENGTH} characters',
            field='password',
        )
    if len(text.encode('utf-8')) > _MAX_PASSWORD_BYTES:
        raise InputValidationError(
            f'password must be at most {_MAX_PASSWORD_BYTES} bytes',
            field='password',
        )
    return text


class AuthService:
    def __init__(self, *, users: UserRepository, jwt_secret: str, token_ttl: timedelta = timedelta(hours=24)):
        self.users = users
        self._secret = jwt_secret
        self._token_ttl = token_ttl

    def register(self, *, email: str, password: str, role: str | None = None) -> UserView:
        normalized_email = validate_email(email)
        validate_password(password)
        if self.users.get_user_by_email(normalized_email) is not None:
            raise InputValidationError('user already exists', field='email', code='user_exists')
        password_hash = hash_password(password)
        try:
            row = self.users.create_user(
                email=normalized_email,
                password_hash=password_hash,
                role=parse_role(role),
            )
        except ValueError as exc:
            # Lost a race against a concurrent registration for the same email.
            raise InputValidationError('user already exists', field='email', code='user_exists') from exc
        _log.info('user_registered user_id=%s role=%s', row['user_id'], row['role'])
        return self._to_view(row)

    def login(self, *, email: str, password: str) -> LoginResult:
        normalized_email = validate_email(email)
        validate_password(password)
        row = self.users.get_user_by_email(normalized_email)
        if row is None or not verify_password(password, str(row.get('password_hash') or '')):
            _log.info('login_rejected email=%s', normalized_email)
            raise AuthenticationError('invalid credentials')
        user = self._to_view(row)
        return LoginResult(token=self.issue_token(user), user=user)

    def issue_token(self, user: UserView, *, now: datetime | None = None) -> str:
        issued_at = now or datetime.now(timezone.utc)
        claims: dict[str, Any] = {
            'sub': user.user_id,
            'email': user.email,
            'role': user.role.value,
            'iat': issued_at,
            'exp': issued_at + self._token_ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=_JWT_ALGORITHM)

    def validate_token(self, token: str) -> Principal:
        text = str(token or '').strip()
        if not text:
            raise AuthenticationError('missing token')
        try:
            claims = jwt.decode(text, self._secret, algorithms=[_JWT_ALGORITHM])
        except PyJWTError as exc:
            raise AuthenticationError('invalid or expired token') from exc
        user_id = str(claims.get('sub') or '').strip()
        if not user_id:
            raise AuthenticationError('invalid or expired token')
        return Principal(
            user_id=user_id,
            email=str(claims.get('email') or ''),
            role=parse_role(claims.get('role')),
        )

    @staticmethod
    def _to_view(row: dict) -> UserView:
        return UserView(
            user_id=str(row['user_id']),
            email=str(row['email']),
            role=parse_role(row.get('role')),
            created_at=str(row.get('created_at') or ''),
            updated_at=str(row.get('updated_at') or ''),
        )
