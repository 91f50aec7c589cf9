from .types import BaseStruct

__all__ = ("BaseStruct",)
