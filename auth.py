import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import get_settings
from database import create_document, get_db, now, oid, parse_document
from errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def get_user_by_email(db: Database, email: str) -> User | None:
    doc = db["user"].find_one({"email": email.strip().lower()})
    return parse_document(User, doc) if doc else None


def get_user(db: Database, user_id: str) -> User:
    doc = db["user"].find_one({"_id": oid(user_id, "User")})
    if not doc:
        raise NotFoundError("User not found")
    return parse_document(User, doc)


def register_user(db: Database, full_name: str, email: str, password: str) -> User:
    if not full_name.strip() or not password:
        raise ValidationError("Email, password, and full name are required")
    if get_user_by_email(db, email):
        raise ConflictError("User with this email already exists")
    user = User(
        full_name=full_name.strip(),
        email=email.strip().lower(),
        password_hash=get_password_hash(password),
        role="customer",
        status="pending",
    )
    try:
        user.id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("User with this email already exists")
    logger.info("Registered user %s pending approval", user.id)
    return user


def authenticate_user(db: Database, email: str, password: str) -> User:
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        raise AuthenticationError("Invalid email or password")
    if user.status != "approved":
        raise AuthorizationError("Account is pending approval. Please contact an administrator.")
    return user


def issue_token(user: User) -> str:
    return create_access_token(data={"sub": user.id, "role": user.role})


def user_from_token(db: Database, token: str) -> User:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        user_id: str | None = payload.get("sub")
    except JWTError:
        raise AuthenticationError()
    if user_id is None:
        raise AuthenticationError()
    try:
        user = get_user(db, user_id)
    except NotFoundError:
        raise AuthenticationError()
    if user.status != "approved":
        raise AuthorizationError("Account is not approved")
    return user


async def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> User:
    return user_from_token(db, token)


async def get_current_admin(current: User = Depends(get_current_user)) -> User:
    if current.role != "admin":
        raise AuthorizationError("Admins only")
    return current


def set_user_status(db: Database, user_id: str, status: str) -> User:
    doc = db["user"].find_one_and_update(
        {"_id": oid(user_id, "User")},
        {"$set": {"status": status, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("User not found")
    logger.info("User %s set to %s", user_id, status)
    return parse_document(User, doc)


def ensure_admin(db: Database, email: str, password: str) -> None:
    if get_user_by_email(db, email):
        return
    admin = User(
        full_name="Admin",
        email=email.strip().lower(),
        password_hash=get_password_hash(password),
        role="admin",
        status="approved",
    )
    create_document(db, "user", admin)
    logger.info("Bootstrapped admin account %s", admin.email)
