from typing import Self

from msgspec import Struct, json

__all__ = ("BaseStruct",)


class BaseStruct(Struct):
    """Base class for configuration models."""

    def to_json(self) -> str:
        """Convert the struct to a JSON string."""
        return json.encode(self).decode("utf-8")

    @classmethod
    def from_json(cls, data: str | bytes) -> Self:
        """Create an instance of the struct from a JSON string."""
        return json.decode(data, type=cls)
