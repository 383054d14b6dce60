"""
自定义异常类
提供更精确的错误处理和异常信息

业务规则类异常（容量、截单、状态流转）直接返回给调用方；
持久化类异常（超时、冲突）由下单引擎在有限次数内重试。
"""

from typing import Any, Dict, Optional


class BaseApplicationError(Exception):
    """应用基础异常类"""

    default_code = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Dict[str, Any] = None
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class DatabaseError(BaseApplicationError):
    """数据库相关异常"""
    default_code = "DATABASE_ERROR"


class AuthenticationError(BaseApplicationError):
    """认证相关异常"""
    default_code = "AUTHENTICATION_REQUIRED"


class PermissionDeniedError(BaseApplicationError):
    """权限拒绝错误"""
    default_code = "PERMISSION_DENIED"


class ValidationError(BaseApplicationError):
    """数据验证异常"""
    default_code = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """资源不存在"""
    default_code = "RESOURCE_NOT_FOUND"


class DishNotFoundError(NotFoundError):
    default_code = "DISH_NOT_FOUND"


class BatchNotFoundError(NotFoundError):
    default_code = "BATCH_NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    default_code = "ORDER_NOT_FOUND"


class BusinessRuleError(BaseApplicationError):
    """业务规则错误"""
    default_code = "BUSINESS_RULE_VIOLATION"


class InvalidQuantityError(BusinessRuleError):
    """订单数量无效"""
    default_code = "INVALID_QUANTITY"


class BatchUnavailableError(BusinessRuleError):
    """批次已停用、已取消或已完成"""
    default_code = "BATCH_UNAVAILABLE"


class CutoffPassedError(BusinessRuleError):
    """已过截单时间"""
    default_code = "CUTOFF_PASSED"


class CapacityExceededError(BusinessRuleError):
    """容量超限异常"""
    default_code = "CAPACITY_EXCEEDED"


class InvalidTransitionError(BusinessRuleError):
    """非法的订单状态流转"""
    default_code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"订单状态不能从 {current} 变更为 {target}",
            details={"current_status": current, "target_status": target},
        )


class OrderNotCompletedError(BusinessRuleError):
    """订单未完成，不能评价"""
    default_code = "ORDER_NOT_COMPLETED"


class DuplicateReviewError(BusinessRuleError):
    default_code = "DUPLICATE_REVIEW"


class DuplicateIdempotencyKeyError(BaseApplicationError):
    """
    幂等键已存在

    不是真正的错误：下单引擎捕获后直接返回之前创建的订单。
    """
    default_code = "DUPLICATE_IDEMPOTENCY_KEY"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("幂等键已使用", details={"order_id": order_id})


class RetryableError(BaseApplicationError):
    """可重试的持久化异常"""
    default_code = "PERSISTENCE_RETRYABLE"


class PersistenceTimeoutError(RetryableError):
    """持久化调用超时"""
    default_code = "PERSISTENCE_TIMEOUT"


class PersistenceConflictError(RetryableError):
    """并发写冲突（乐观锁版本不一致或事务冲突）"""
    default_code = "PERSISTENCE_CONFLICT"
