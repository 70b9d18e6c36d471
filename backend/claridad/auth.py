import time
from dataclasses import dataclass
import jwt
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from .config import settings

security = HTTPBearer(auto_error=False)

@dataclass(frozen=True)
class Identity:
    user_id: int
    email: str | None = None

# Sessions are issued by the external auth layer; tokens minted here are for
# tooling and tests only.
def create_access_token(sub: str, email: str | None = None, expires_minutes: int = 60) -> str:
    payload = {
        "sub": sub,
        "iat": int(time.time()),
        "exp": int(time.time()) + 60 * expires_minutes,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

async def get_identity(creds: HTTPAuthorizationCredentials | None = Depends(security)) -> Identity:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    data = decode_token(creds.credentials)
    try:
        return Identity(user_id=int(data["sub"]), email=data.get("email"))
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject")
