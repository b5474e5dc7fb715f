# Authentication Utilities

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from dotenv import load_dotenv
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError

from models import TokenData

load_dotenv()

logger = logging.getLogger(__name__)

# --- Configuration ---
# Generate a secret key using: openssl rand -hex 32
SECRET_KEY = os.getenv("SECRET_KEY", "3f1c2a9d8e7b6a5f4e3d2c1b0a99887766554433221100ffeeddccbbaa998877")  # dev default, override in .env
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
ALLOWED_EMAIL_DOMAIN = os.getenv("ALLOWED_EMAIL_DOMAIN", "@jaipur.manipal.edu")

# --- Password Hashing ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def get_password_hash(password: str) -> str:
    """Hashes a plain password."""
    return pwd_context.hash(password.encode('utf-8'))


def is_allowed_email(email: str) -> bool:
    """Only institution addresses may register."""
    return email.lower().endswith(ALLOWED_EMAIL_DOMAIN.lower())


# --- JWT Token Handling ---
# Tokens are issued by the credential service; create_access_token mirrors its format.
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Creates a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[TokenData]:
    """Verifies a JWT token and returns the payload (TokenData)."""
    try:
        # jwt.decode checks expiration and raises JWTError if expired
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

        email = payload.get("sub")
        if not email:
            logger.warning("Token missing 'sub' claim")
            return None

        return TokenData(email=email, role=payload.get("role"))
    except JWTError as e:
        logger.info("JWT error: %s", e)
        return None
    except ValidationError as e:
        logger.warning("Token payload validation error: %s", e)
        return None
