"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

按传播策略分为两类：

- 结构性误用（InvalidStateError / NotFoundError / ConcurrentOperationError）：
  同步抛给调用方，说明调用顺序或 UI 时序有 bug。
- 可吸收错误（GenerationFailure / ContextResolutionDegraded）：
  由 Orchestrator / ContextResolver 记录进会话状态，不向外抛出。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 message_id、identity 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class InvalidStateError(BusinessError):
    """非法的状态迁移，或对非终态消息的修改。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="INVALID_STATE", message=message, http_status=409, **extra)


class NotFoundError(BusinessError):
    """未知的消息 ID。"""

    def __init__(self, message_id: str, **extra):
        super().__init__(
            code="MESSAGE_NOT_FOUND",
            message=f"message not found: {message_id}",
            http_status=404,
            message_id=message_id,
            **extra,
        )


class ConcurrentOperationError(BusinessError):
    """同一会话上已有操作（生成、恢复等）在进行中。"""

    def __init__(self, identity: str, **extra):
        super().__init__(
            code="CONCURRENT_OPERATION",
            message=f"another operation is already in flight for conversation {identity!r}",
            http_status=409,
            identity=identity,
            **extra,
        )


class GenerationFailure(BusinessError):
    """模型调用边界报告失败；由 Orchestrator 吸收为消息的 error 状态。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="GENERATION_FAILED", message=message, http_status=502, **extra)


class ContextResolutionDegraded(BusinessError):
    """某个上下文引用无法解析；以内联标记替代，不中断整体解析。"""

    def __init__(self, kind: str, reference: str, reason: str):
        self.kind = kind
        self.reference = reference
        self.reason = reason
        super().__init__(
            code="CONTEXT_DEGRADED",
            message=f"{kind} {reference!r} could not be resolved: {reason}",
            kind=kind,
            reference=reference,
        )

    @property
    def marker(self) -> str:
        return f"[Unresolved {self.kind}: {self.reference} ({self.reason})]"


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，由 ProviderModelInvoker 负责重试/退避。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
