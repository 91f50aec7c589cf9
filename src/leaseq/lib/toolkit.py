import os
from collections.abc import Callable
from typing import Any, overload

__all__ = ("get_env",)

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@overload
def get_env(key: str, default: bool) -> Callable[[], bool]: ...


@overload
def get_env(key: str, default: int) -> Callable[[], int]: ...


@overload
def get_env(key: str, default: float) -> Callable[[], float]: ...


@overload
def get_env(key: str, default: str) -> Callable[[], str]: ...


@overload
def get_env(key: str, default: None) -> Callable[[], str | None]: ...


def get_env(key: str, default: Any) -> Callable[[], Any]:
    """Build a `default_factory` that reads `key` from the environment.

    The raw string is coerced to the type of `default`, so booleans accept
    `1/true/yes/on` and numbers go through `int()` / `float()`.

    Example:
        >>> class Config(BaseStruct):
        ...     level: str = field(default_factory=get_env("LEASEQ_LOG_LEVEL", "INFO"))
    """

    def factory() -> Any:
        value = os.getenv(key)
        if value is None:
            return default

        match default:
            case bool():
                return value.strip().lower() in _TRUE_VALUES
            case int():
                return int(value)
            case float():
                return float(value)
            case _:
                return value

    return factory
