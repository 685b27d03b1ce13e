from passlib.context import CryptContext
import os
from datetime import datetime, timedelta
from jose import jwt, JWTError
from typing import Optional

from app.core.exceptions import Forbidden

# 1. 비밀번호 암호화 설정
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# JWT 설정
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-very-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))  # 1일

# --- 인증 관련 함수 ---

def get_password_hash(password: str) -> str:
    """비밀번호를 해시화합니다."""
    return pwd_context.hash(password[:72])

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """평문 비밀번호와 해시된 비밀번호를 비교합니다."""
    return pwd_context.verify(plain_password[:72], hashed_password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """JWT 액세스 토큰을 생성합니다."""
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def verify_token(token: str) -> int:
    """
    JWT 토큰을 디코딩하고 유효성을 검증한 뒤 user_id를 반환합니다.
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Forbidden("Could not validate credentials")
    user_id = payload.get("sub")
    if user_id is None:
        raise Forbidden("Could not validate credentials")
    return int(user_id)

# --- 웹소켓 검증 함수 ---

def verify_socket_identity(user_id: int, token: Optional[str]) -> None:
    """
    라이브 채널 authenticate 이벤트의 신원을 확인합니다.
    토큰이 주어지면 토큰의 sub가 요청한 user_id와 같아야 합니다.
    """
    if not token:
        return
    if verify_token(token) != user_id:
        raise Forbidden("Token does not match user")
