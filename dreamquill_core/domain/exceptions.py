"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于会话引擎、服务层统一捕获并转换为 error 事件或用户提示。

分层约定：
- Provider 适配层只抛出 TransportError / RequestFailed / MalformedResponse。
- 存储层只抛出 StoreContention / StoreFailure。
- EmptyReply 表示厂商调用成功但没有可用文本，与网络错误区分开。
"""

from typing import Any


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_FAILURE"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、session_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """连接/读取失败（DNS、超时、连接被重置等），核心内部从不重试。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="TRANSPORT_ERROR", message=message, http_status=502, **extra)


class RequestFailed(BusinessError):
    """厂商返回非 2xx 状态码，原样上抛，不做重试。"""

    def __init__(self, status: int, body: str, code: str = "REQUEST_FAILED", **extra):
        self.status = status
        self.body = body
        super().__init__(
            code=code,
            message=f"request failed: {status} -> {body}",
            http_status=status,
            **extra,
        )


class RateLimitError(RequestFailed):
    """Provider 限流（429）。同样不在核心内重试，由调用方决定退避策略。"""

    def __init__(self, body: str, **extra):
        super().__init__(status=429, body=body, code="RATE_LIMIT", **extra)


class MalformedResponse(BusinessError):
    """响应 JSON 结构不符合预期，raw 字段保留原始负载用于排查。"""

    def __init__(self, message: str, raw: Any = None, **extra):
        self.raw = raw
        super().__init__(code="MALFORMED_RESPONSE", message=message, http_status=502, **extra)


class EmptyReply(BusinessError):
    """厂商调用成功但没有返回任何可用文本。"""

    def __init__(self, message: str = "模型未返回任何内容", **extra):
        super().__init__(code="EMPTY_REPLY", message=message, http_status=502, **extra)


class StoreError(BusinessError):
    """持久化层错误基类。"""


class StoreContention(StoreError):
    """存储暂时繁忙（数据库锁、文件被占用），可按退避策略重试。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="STORE_BUSY", message=message, http_status=503, **extra)


class StoreFailure(StoreError):
    """除繁忙以外的任何持久化错误，立即上抛。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="STORE_FAILURE", message=message, http_status=500, **extra)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
