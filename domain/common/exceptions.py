"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
支付相关错误统一使用 PaymentError + PaymentErrorKind，按 kind 分派，不再按异常类区分。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentErrorKind


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.http_status = http_status
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type=PaymentErrorKind.VALIDATION_ERROR.value,
            details=details,
            field=field,
            http_status=PaymentErrorKind.VALIDATION_ERROR.http_status,
        )


class PaymentError(BusinessException):
    """支付错误：kind 为稳定错误码，message 为可读说明。"""

    def __init__(
        self,
        kind: PaymentErrorKind,
        message: str,
        *,
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.kind = kind
        super().__init__(
            code=kind.business_code,
            message=message,
            error_type=kind.value,
            details=details,
            field=field,
            http_status=kind.http_status,
        )

    def __repr__(self) -> str:
        return f"PaymentError(kind={self.kind.value}, message={self.message!r})"
