"""
JWT 认证工具
校验 Supabase 签发的 access token（HS256，共享 JWT secret）
"""
import os
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

# JWT 配置
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

security = HTTPBearer(auto_error=False)


def create_access_token(subject: str, role: str = "service", organization_id: Optional[str] = None) -> str:
    """生成 JWT token（服务间调用、测试使用）"""
    expire = datetime.utcnow() + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {
        "sub": subject,
        "role": role,
        "exp": expire
    }
    if organization_id:
        payload["organization_id"] = organization_id
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """解析 JWT token，Supabase token 带 aud=authenticated，不校验 aud"""
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={"verify_aud": False}
        )
    except JWTError:
        return None


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    """
    获取当前调用方（FastAPI Dependency）
    从 Authorization: Bearer {token} header 中提取并验证 token
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authorization required")

    payload = decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")

    return payload
