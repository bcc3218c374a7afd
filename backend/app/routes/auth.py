import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from ..database import get_db
from .. import models, schemas, audit
from ..auth import get_password_hash, verify_password, create_access_token

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)


def rate_limit(limit: str):
    # TestClient requests all share one address
    if os.getenv("TESTING") == "1":
        return lambda func: func
    return limiter.limit(limit)


def _find_user(db: Session, email: str) -> models.User | None:
    return db.query(models.User).filter(models.User.email == email.lower()).first()


@router.post("/register", response_model=schemas.Token)
@rate_limit("5/minute")
async def register(request: Request, payload: schemas.UserCreate, db: Session = Depends(get_db)):
    if _find_user(db, payload.email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")
    user = models.User(
        email=payload.email.lower(),
        hashed_password=get_password_hash(payload.password),
        full_name=payload.full_name,
    )
    db.add(user)
    db.flush()
    audit.log_action(db, user.id, "register", "user", user.id)
    db.commit()
    logger.info("Registered user %s", user.id)
    return schemas.Token(access_token=create_access_token({"sub": user.email}))


@router.post("/login", response_model=schemas.Token)
@rate_limit("10/minute")
async def login(request: Request, payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = _find_user(db, payload.email)
    if user is None or not verify_password(payload.password, user.hashed_password):
        logger.info("Failed login for %s", payload.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return schemas.Token(access_token=create_access_token({"sub": user.email}))
