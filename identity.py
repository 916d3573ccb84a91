# identity.py
# -----------------------------------------------------------------------------
# Identity & Access: credential check, registration, role rule and the
# explicit current-user context.
# -----------------------------------------------------------------------------

import os
from typing import Any, List, Optional

from models import GRADES, ROLE_ADMIN, ROLE_STUDENT, User, generate_id, load_records, utc_now_iso
from storage import CURRENT_USER, USERS, DurableStore

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "Alyserag")

MIN_USERNAME_LEN = 3
MIN_PASSWORD_LEN = 4


# =========================
# Errors
# =========================
class IdentityError(ValueError):
    message = "Identity error."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class AuthError(IdentityError):
    message = "Sign-in failed."


class UserNotFound(AuthError):
    message = "Username does not exist."


class BadCredential(AuthError):
    message = "Incorrect password."


class RegistrationError(IdentityError):
    message = "Registration failed."


class DuplicateUsername(RegistrationError):
    message = "Username already exists."


class UsernameTooShort(RegistrationError):
    message = f"Username must be at least {MIN_USERNAME_LEN} characters."


class PasswordTooShort(RegistrationError):
    message = f"Password must be at least {MIN_PASSWORD_LEN} characters."


class MissingGrade(RegistrationError):
    message = "Students must choose a grade."


class InvalidGrade(RegistrationError):
    message = "Unknown grade."


# =========================
# Lookups / role rule
# =========================
def resolve_role(username: str, admin_username: Optional[str] = None) -> str:
    reserved = ADMIN_USERNAME if admin_username is None else admin_username
    return ROLE_ADMIN if username == reserved else ROLE_STUDENT


def list_users(store: DurableStore) -> List[User]:
    return load_records(store.list(USERS), User, "user")


def find_user_by_username(store: DurableStore, username: str) -> Optional[User]:
    for u in list_users(store):
        if u.username == username:
            return u
    return None


def find_user_by_id(store: DurableStore, user_id: str) -> Optional[User]:
    for u in list_users(store):
        if u.id == user_id:
            return u
    return None


# =========================
# Operations
# =========================
def authenticate(store: DurableStore, username: str, password: str) -> User:
    user = find_user_by_username(store, username)
    if user is None:
        raise UserNotFound()
    if user.password != password:
        raise BadCredential()
    return user


def register(store: DurableStore, username: str, password: str,
             grade: Optional[str] = None, admin_username: Optional[str] = None) -> User:
    username = username or ""
    password = password or ""
    if find_user_by_username(store, username) is not None:
        raise DuplicateUsername()
    if len(username) < MIN_USERNAME_LEN:
        raise UsernameTooShort()
    if len(password) < MIN_PASSWORD_LEN:
        raise PasswordTooShort()

    role = resolve_role(username, admin_username)
    if role == ROLE_STUDENT:
        if not grade:
            raise MissingGrade()
        if grade not in GRADES:
            raise InvalidGrade()
    else:
        grade = None

    user = User(
        id=generate_id(),
        username=username,
        password=password,
        role=role,
        grade=grade,
        created_at=utc_now_iso(),
    )
    store.append(USERS, user.to_dict())
    print(f"[auth] registered {role} '{username}'", flush=True)
    return user


# =========================
# Current-user context
# =========================
class SessionContext:
    """
    Owns the current-user slot. `slots` is anything with get_slot/set_slot
    (the Durable Store itself, or the per-browser cookie adapter in auth.py).
    The slot never holds the password; reads re-resolve against Users.
    """

    def __init__(self, slots: Any, store: DurableStore):
        self.slots = slots
        self.store = store

    def sign_in(self, user: User) -> User:
        self.slots.set_slot(CURRENT_USER, user.public_dict())
        return user

    def sign_out(self) -> None:
        self.slots.set_slot(CURRENT_USER, None)

    def current_user(self) -> Optional[User]:
        data = self.slots.get_slot(CURRENT_USER, None)
        if not isinstance(data, dict) or not data.get("id"):
            return None
        user = find_user_by_id(self.store, str(data["id"]))
        if user is None:
            print(f"[auth] current user {data.get('id')} no longer exists, signing out", flush=True)
            self.sign_out()
        return user

    def login(self, username: str, password: str) -> User:
        return self.sign_in(authenticate(self.store, username, password))

    def register(self, username: str, password: str, grade: Optional[str] = None) -> User:
        return self.sign_in(register(self.store, username, password, grade))
