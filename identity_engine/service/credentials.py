from __future__ import annotations

import asyncio
import re
from typing import List, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from identity_engine.logging import get_logger
from identity_engine.service.results import Result

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

# (rule name, message, predicate that must hold), evaluated in order
_STRENGTH_RULES = [
    (
        "min_length",
        "Password must be at least 8 characters long",
        lambda pw: len(pw) >= 8,
    ),
    (
        "uppercase",
        "Password must contain at least one uppercase letter (A-Z)",
        lambda pw: re.search(r"[A-Z]", pw) is not None,
    ),
    (
        "lowercase",
        "Password must contain at least one lowercase letter (a-z)",
        lambda pw: re.search(r"[a-z]", pw) is not None,
    ),
    (
        "digit",
        "Password must contain at least one number (0-9)",
        lambda pw: re.search(r"[0-9]", pw) is not None,
    ),
    (
        "special",
        "Password must contain at least one special character (!@#$%^&*)",
        lambda pw: any(ch in SPECIAL_CHARACTERS for ch in pw),
    ),
    (
        "no_whitespace",
        "Password must not contain spaces",
        lambda pw: re.search(r"\s", pw) is None,
    ),
]


class CredentialService:
    """argon2id hashing and ordered password strength rules."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, password: str, stored_hash: str, algo: str = PASSWORD_ALGO) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def hash_async(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(
        self, password: str, stored_hash: str, algo: str = PASSWORD_ALGO
    ) -> bool:
        return await asyncio.to_thread(self.verify, password, stored_hash, algo)

    @staticmethod
    def strength_violations(password: str) -> List[str]:
        return [name for name, _, check in _STRENGTH_RULES if not check(password or "")]

    def validate_strength(self, password: str) -> Result[None]:
        """Return ``invalid`` carrying the first failing rule's message.

        Every rule is evaluated so ``detail["violations"]`` lists all of them.
        """
        password = password or ""
        failures = [(name, message) for name, message, check in _STRENGTH_RULES if not check(password)]
        if not failures:
            return Result.ok()
        return Result.invalid(
            failures[0][1], detail={"violations": [name for name, _ in failures]}
        )
