from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


EDITOR_ROLES = frozenset({"editor", "admin"})


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    user_id: int | None = None

    @property
    def is_editor(self) -> bool:
        return self.role in EDITOR_ROLES

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def require_user_id(self) -> int:
        if self.user_id is None:
            raise PermissionError("principal has no user id")
        return self.user_id

    def require_author(self, author_id: int) -> None:
        if self.is_editor:
            return
        if self.user_id is None or self.user_id != author_id:
            raise PermissionError("only the author or an editor may modify this article")


def parse_user_id(raw: str | None) -> int | None:
    if raw is None:
        return None
    stripped = raw.strip()
    if not stripped.isdigit():
        return None
    value = int(stripped)
    return value if value > 0 else None
