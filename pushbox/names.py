import secrets
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

WORDS_DIR = Path(__file__).resolve().parent / "words"


def capitalize_first(word: str) -> str:
    """Uppercase the first character of *word* and leave the rest untouched."""

    if not word:
        return ""
    return word[:1].upper() + word[1:]


def _clean_words(words: Iterable[str]) -> List[str]:
    return [word.strip() for word in words if word and word.strip()]


class PhraseGenerator:
    """Produce adjective+noun names such as ``BraveFox``."""

    def __init__(self, adjectives: Sequence[str], nouns: Sequence[str]) -> None:
        self.adjectives = _clean_words(adjectives)
        self.nouns = _clean_words(nouns)
        if not self.adjectives or not self.nouns:
            raise ValueError("Both word lists must contain at least one word")

    @classmethod
    def from_files(
        cls,
        adjectives_path: Optional[Path] = None,
        nouns_path: Optional[Path] = None,
    ) -> "PhraseGenerator":
        adjectives_path = adjectives_path or WORDS_DIR / "adjectives.txt"
        nouns_path = nouns_path or WORDS_DIR / "nouns.txt"
        return cls(
            adjectives_path.read_text(encoding="utf-8").split("\n"),
            nouns_path.read_text(encoding="utf-8").split("\n"),
        )

    @property
    def combinations(self) -> int:
        return len(self.adjectives) * len(self.nouns)

    def generate(self) -> str:
        adjective = secrets.choice(self.adjectives)
        noun = secrets.choice(self.nouns)
        return capitalize_first(adjective) + capitalize_first(noun)
