# counsel_bot/keywords.py
from typing import List

from .config import KEYWORDS_DIR

DEFAULT_CRITICAL_KEYWORDS = ["suicide", "kill", "die", "hurt", "emergency"]


def _load_phrases(name: str) -> List[str]:
    """
    Load one keyword file from keywords/ as a list of lowercase phrases.

    - Skips blank lines and lines starting with '#'
    - Strips whitespace
    """
    path = KEYWORDS_DIR / f"{name}.txt"
    if not path.exists():
        return []
    text = path.read_text(encoding="utf-8")
    phrases: List[str] = []
    for line in text.splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        phrases.append(s.lower())
    return phrases


# Any hit in a recent user turn forces CRITICAL risk.
CRITICAL_KEYWORDS = _load_phrases("risk_critical") or DEFAULT_CRITICAL_KEYWORDS
