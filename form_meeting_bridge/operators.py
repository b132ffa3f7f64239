from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperatorIdentity:
    display_name: str
    external_id: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.display_name, "id": self.external_id}


class OperatorDirectory:
    """Ordered, read-only name -> operator mapping.

    The first entry is the default operator used when a form names
    somebody who is not configured.
    """

    def __init__(self, operators: Iterable[OperatorIdentity]) -> None:
        entries: dict[str, OperatorIdentity] = {}
        for operator in operators:
            entries.setdefault(operator.display_name, operator)
        if not entries:
            raise ValueError("Operator directory must contain at least one operator.")
        self._entries = entries
        self._default = next(iter(entries.values()))

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> "OperatorDirectory":
        return cls(OperatorIdentity(str(name).strip(), str(external_id).strip()) for name, external_id in pairs)

    @classmethod
    def from_string(cls, text: str) -> "OperatorDirectory":
        """Parse ``"name1:id1,name2:id2"``; malformed pairs are ignored."""
        pairs: list[tuple[str, str]] = []
        for chunk in text.split(","):
            parts = chunk.strip().split(":")
            if len(parts) == 2 and parts[0].strip() and parts[1].strip():
                pairs.append((parts[0], parts[1]))
            elif chunk.strip():
                logger.warning("Ignoring malformed operator entry %r", chunk.strip())
        return cls.from_pairs(pairs)

    @property
    def default(self) -> OperatorIdentity:
        return self._default

    def resolve(self, name: str | None) -> OperatorIdentity:
        if name is not None and name in self._entries:
            return self._entries[name]
        logger.info("No operator found for name %r, using default %r", name, self._default.display_name)
        return self._default

    def __iter__(self) -> Iterator[OperatorIdentity]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"OperatorDirectory({list(self._entries)!r})"


def resolve_operator(form_user_name: str | None, directory: OperatorDirectory) -> OperatorIdentity:
    return directory.resolve(form_user_name)
