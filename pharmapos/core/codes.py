"""
Enum code tables
Explicit, exhaustive mapping between enum members and their stored codes
"""
from enum import Enum
from typing import Dict, Generic, Type, TypeVar

from .exceptions import InvariantViolation, ValidationError

E = TypeVar("E", bound=Enum)


class CodeTable(Generic[E]):
    """
    Two-way mapping between an Enum and the codes used in storage and requests.

    The table must cover every member; a missing member is a programming error
    and fails at import time.
    """

    def __init__(self, enum_cls: Type[E], codes: Dict[E, str]):
        missing = [member.name for member in enum_cls if member not in codes]
        if missing:
            raise InvariantViolation(f"Code table for {enum_cls.__name__} is missing {missing}")
        self.enum_cls = enum_cls
        self._to_code = dict(codes)
        self._from_code = {code.lower(): member for member, code in codes.items()}

    def to_code(self, member: E) -> str:
        return self._to_code[member]

    def from_code(self, code) -> E:
        if isinstance(code, self.enum_cls):
            return code
        if not isinstance(code, str) or code.lower() not in self._from_code:
            raise ValidationError(
                f"Unknown {self.enum_cls.__name__} '{code}'. "
                f"Must be one of: {', '.join(self._to_code.values())}",
                entity=self.enum_cls.__name__,
            )
        return self._from_code[code.lower()]

    def codes(self):
        return list(self._to_code.values())
