"""预期失败路径使用的结果值。

校验、超时等可预期的失败以 Err 返回，而不是抛出异常；
只有真正的意外故障才会以异常形式向上传播。
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .exceptions import BusinessError

T = TypeVar("T")
E = TypeVar("E", bound=BusinessError)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err[E]]
