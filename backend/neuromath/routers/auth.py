from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
import logging

from ..settings import settings
from sqlalchemy.orm import Session
from ..db import get_db
from ..models import AuthUser, AuthSession

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	username: str


def _ensure_seed_user(db: Session) -> None:
	# Seed accounts live in the DB so students and tests can reference them
	username = settings.seed_username
	password = settings.seed_password_plain
	if not username or not password:
		return
	if db.get(AuthUser, username) is not None:
		return
	db.add(AuthUser(username=username, password_hash=pwd_context.hash(_bcrypt_safe(password))))
	db.commit()


def _bcrypt_safe(password: str) -> str:
	# Truncate password to 72 bytes for bcrypt compatibility
	password_bytes = password.encode('utf-8')
	if len(password_bytes) > 72:
		password_bytes = password_bytes[:72]
	return password_bytes.decode('utf-8', errors='ignore')


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(_bcrypt_safe(plain_password), hashed_password)


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
	_ensure_seed_user(db)
	user_row = db.get(AuthUser, username)
	if user_row and verify_password(password, user_row.password_hash):
		return User(username=username)
	return None


def _resolve_expiry(expires_delta: Optional[timedelta]) -> datetime:
	"""Return a safe JWT expiry timestamp.

	Respects the configured session timeout when provided, and falls back to a
	generous but finite default.
	"""
	delta = expires_delta
	if delta is None:
		minutes = getattr(settings, "access_token_expire_minutes", None)
		if isinstance(minutes, int) and minutes > 0:
			delta = timedelta(minutes=minutes)
		else:
			delta = timedelta(days=30)
	now = datetime.now(timezone.utc)
	try:
		return now + delta
	except OverflowError:
		# Cap at far future but within datetime bounds
		return datetime.max.replace(tzinfo=timezone.utc)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	expire = _resolve_expiry(expires_delta)
	to_encode.update({"exp": expire})
	encoded_jwt = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
	return encoded_jwt


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	# Create a new session id (jti) and persist server-side
	session_id = uuid.uuid4().hex
	try:
		db.add(AuthSession(session_id=session_id, username=user.username))
		db.commit()
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Could not persist auth session for %s", user.username)
		raise HTTPException(status_code=503, detail="Could not start a session, please retry")
	access_token = create_access_token({"sub": user.username, "jti": session_id})
	return Token(access_token=access_token)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
		username: str | None = payload.get("sub")
		jti: str | None = payload.get("jti")
		if username is None or jti is None:
			raise credentials_exception
	except JWTError:
		raise credentials_exception
	# The session row must still exist so tokens can be revoked server-side
	try:
		row = db.get(AuthSession, jti)
		if not row or row.username != username:
			raise credentials_exception
		row.last_activity_at = datetime.utcnow()
		db.add(row)
		db.commit()
	except SQLAlchemyError:
		# On DB errors, fail closed
		db.rollback()
		raise credentials_exception
	return User(username=username)


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user


class RegisterRequest(BaseModel):
	username: str
	password: str
	email: Optional[str] = None
	full_name: Optional[str] = None


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = (req.username or "").strip()
	password = req.password or ""
	if not username or not password:
		raise HTTPException(status_code=400, detail="username and password are required")
	if len(username) < 3 or len(username) > 128:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	# Check exists
	existing = db.get(AuthUser, username)
	if existing:
		raise HTTPException(status_code=409, detail="username already exists")
	row = AuthUser(
		username=username,
		password_hash=pwd_context.hash(_bcrypt_safe(password)),
		email=(req.email or "").strip() or None,
		full_name=(req.full_name or "").strip() or None,
	)
	db.add(row)
	db.commit()
	return {"ok": True}
