"""
安全相关功能
JWT 令牌签发/校验，以及每个请求显式携带的身份（用户ID + 角色）

凭证校验由外部认证服务负责；这里只解析已签发的令牌，
不保存任何全局的"当前用户"状态。
"""

import jwt
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .exceptions import AuthenticationError, PermissionDeniedError
from ..config.settings import settings


class Role(str, Enum):
    """角色枚举"""
    BUYER = "buyer"
    COOK = "cook"
    ADMIN = "admin"
    SYSTEM = "system"   # 支付回调等内部调用


@dataclass(frozen=True)
class Identity:
    """请求身份"""
    user_id: str
    role: Role

    @property
    def is_privileged(self) -> bool:
        return self.role in (Role.ADMIN, Role.SYSTEM)

    def require(self, *roles: Role):
        """要求当前身份属于给定角色之一"""
        if self.role not in roles:
            raise PermissionDeniedError(
                "当前角色无权执行该操作",
                details={"role": self.role.value, "allowed": [r.value for r in roles]},
            )


SYSTEM_ACTOR = Identity(user_id="system", role=Role.SYSTEM)


class SecurityManager:
    """安全管理器"""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None,
                 expire_hours: Optional[int] = None):
        self.secret = secret or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.expire_hours = expire_hours or settings.jwt_expire_hours

    def create_jwt_token(self, user_id: str, role: Role,
                         additional_claims: Dict[str, Any] = None) -> str:
        """创建JWT token"""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "role": Role(role).value,
            "exp": now + timedelta(hours=self.expire_hours),
            "iat": now,
        }
        if additional_claims:
            payload.update(additional_claims)
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_jwt_token(self, token: str) -> Dict[str, Any]:
        """解码JWT token"""
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

    def identity_from_token(self, token: str) -> Identity:
        """从token中提取身份"""
        payload = self.decode_jwt_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Token missing subject")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthenticationError("Token carries unknown role")
        return Identity(user_id=str(user_id), role=role)


# 全局安全管理器实例
security_manager = SecurityManager()

_bearer = HTTPBearer(auto_error=False)


async def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)
) -> Identity:
    """从Authorization header中提取并验证身份"""
    if credentials is None:
        raise AuthenticationError("missing bearer token")
    return security_manager.identity_from_token(credentials.credentials)


async def get_system_identity(identity: Identity = Depends(get_identity)) -> Identity:
    """仅允许系统令牌（支付回调）"""
    identity.require(Role.SYSTEM)
    return identity
