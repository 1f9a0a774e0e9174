"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在运行时边界统一捕获，并转换为用户可见的错误消息。

分类：
- ValidationError / NoModelsAvailableError: 设置不完整或无法解析模型。
- ConnectivityError: 本地 LLM 服务不可达（拒绝连接、DNS 失败等）。
- LlmTimeoutError: 请求被超时计时器中止，与连接失败区分。
- MalformedResponseError: 响应缺少预期字段。
- HttpError: 非 2xx 响应，携带 status。
- RequestCancelledError: 进行中的请求被主动取消。
- ThrottledError / ShutdownError: 准入层拒绝。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "CONNECTIVITY_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 server_type、url 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class NoModelsAvailableError(ValidationError):
    """服务端可达，但没有任何可用模型。"""


class ConnectivityError(BusinessError):
    """网络层错误，例如连接被拒绝、主机不可达。"""


class LlmTimeoutError(BusinessError):
    """请求超过配置的超时时间后被中止。"""


class MalformedResponseError(BusinessError):
    """Provider 返回的 JSON 缺少预期字段。"""


class HttpError(BusinessError):
    """Provider 返回非 2xx 响应。"""

    def __init__(self, status: int, message: str, body: Optional[str] = None, **extra):
        super().__init__(code="HTTP_ERROR", message=message, http_status=status, **extra)
        self.status = status
        self.body = body or ""


class RequestCancelledError(BusinessError):
    """进行中的请求被取消（例如运行时关闭）。"""


class ThrottledError(BusinessError):
    """事件洪泛保护触发。"""


class ShutdownError(BusinessError):
    """运行时已关闭或正在关闭。"""
