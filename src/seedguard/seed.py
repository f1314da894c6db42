"""
Seed phrases and the master key behind them.

A seed phrase is a BIP-39 mnemonic. Stretched through the BIP-39
PBKDF2 step it becomes the 64-byte master key every PGP keypair is
derived from. The phrase itself is never written to disk.

Also here: the seed quiz (a confirmation object asking the user to
repeat a few words of a fresh phrase) and the per-word validator
used by restore screens.
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from mnemonic import Mnemonic

from .models import VALID_SEED_LENGTHS, MasterKey

logger = logging.getLogger("seedguard.seed")


class MasterKeyFactory(ABC):
    """Source of seed phrases and the master keys they produce."""

    @abstractmethod
    def generate_seed_phrase(self) -> list[str]:
        """Generate a fresh phrase and make it the current one."""

    @abstractmethod
    def restore_seed_phrase(self, words: Sequence[str]) -> None:
        """Make a caller-supplied phrase the current one."""

    @abstractmethod
    def get_master_key(self) -> MasterKey:
        """Derive the master key for the current phrase."""


class MnemonicKeyFactory(MasterKeyFactory):
    """BIP-39 master key factory.

    Args:
        seed_phrase_length: Words per generated phrase.
        language: Mnemonic wordlist language.
    """

    def __init__(self, seed_phrase_length: int = 12, language: str = "english") -> None:
        if seed_phrase_length not in VALID_SEED_LENGTHS:
            raise ValueError(f"Unsupported seed phrase length: {seed_phrase_length}")
        self._length = seed_phrase_length
        self._mnemonic = Mnemonic(language)
        self._phrase: Optional[list[str]] = None

    @property
    def seed_phrase_length(self) -> int:
        return self._length

    def generate_seed_phrase(self) -> list[str]:
        strength = self._length * 32 // 3
        words = self._mnemonic.generate(strength=strength).split()
        self._phrase = words
        return list(words)

    def restore_seed_phrase(self, words: Sequence[str]) -> None:
        if words is None:
            raise ValueError("Seed phrase is required")
        self._phrase = [w.strip().lower() for w in words]

    def get_master_key(self) -> MasterKey:
        if self._phrase is None:
            raise RuntimeError("No seed phrase generated or restored")
        seed = Mnemonic.to_seed(" ".join(self._phrase))
        return MasterKey(seed)


class SeedValidator:
    """Checks words against the mnemonic wordlist."""

    def __init__(self, language: str = "english") -> None:
        self._mnemonic = Mnemonic(language)
        self._words = frozenset(self._mnemonic.wordlist)

    def is_word_valid(self, word: str) -> bool:
        return word.strip().lower() in self._words

    def is_phrase_valid(self, words: Sequence[str]) -> bool:
        """True if every word is known and the BIP-39 checksum matches."""
        if len(words) not in VALID_SEED_LENGTHS:
            return False
        if not all(self.is_word_valid(w) for w in words):
            return False
        return self._mnemonic.check(" ".join(w.strip().lower() for w in words))

    def suggestions(self, prefix: str, limit: int = 5) -> list[str]:
        prefix = prefix.strip().lower()
        if not prefix:
            return []
        return [w for w in self._mnemonic.wordlist if w.startswith(prefix)][:limit]


class SeedQuiz:
    """Asks the user to repeat randomly chosen words of a new phrase.

    Args:
        seed_phrase: The phrase being confirmed.
        question_count: How many positions to ask about.
    """

    def __init__(self, seed_phrase: Sequence[str], question_count: int = 3) -> None:
        if not seed_phrase:
            raise ValueError("Seed phrase is required")
        self._phrase = [w.lower() for w in seed_phrase]
        count = min(question_count, len(self._phrase))
        rng = secrets.SystemRandom()
        self._tasks = sorted(rng.sample(range(len(self._phrase)), count))
        self._answered: dict[int, bool] = {}

    @property
    def tasks(self) -> list[int]:
        """Zero-based word positions the user must fill in."""
        return list(self._tasks)

    def verify_word(self, index: int, word: str) -> bool:
        if index not in self._tasks:
            raise IndexError(f"Position {index} is not part of this quiz")
        ok = self._phrase[index] == word.strip().lower()
        self._answered[index] = ok
        return ok

    def verify(self, answers: dict[int, str]) -> bool:
        """Check a full set of answers at once."""
        if set(answers) != set(self._tasks):
            return False
        return all(self.verify_word(i, w) for i, w in answers.items())

    @property
    def is_solved(self) -> bool:
        return all(self._answered.get(i, False) for i in self._tasks)
