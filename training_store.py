"""Append-only corpus of oracle-labelled split examples.

Each line of the store file is one JSON object:

    {
      "page_id": "0007_a1b2c3",
      "book_id": "alchemy_book",
      "image_url": "images/alchemy_book/0007_a1b2c3.jpg",
      "features": { ...SplitFeatures... },
      "ground_truth_position": 512,
      "confidence": "high",
      "reasoning": "...",
      "created_at": "2026-10-18T12:00:00+00:00"
    }

Examples are only ever appended; nothing here updates or deletes a line.
Appends from concurrent labelling threads are serialised with a lock.
"""

import json
import sys
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from split_features import SplitFeatures

DEFAULT_STORE = Path("split_training_examples.jsonl")
MIN_TRAINING_EXAMPLES = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrainingExample:
    page_id: str
    book_id: str
    image_url: str
    features: SplitFeatures | None
    ground_truth_position: int
    confidence: str
    reasoning: str = ""
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_oracle(
        cls,
        page_id: str,
        book_id: str,
        image_url: str,
        features: SplitFeatures,
        judgment: dict,
    ) -> "TrainingExample | None":
        """Build an example from an oracle judgment; None for single pages."""
        if not judgment.get("is_two_page_spread"):
            return None
        return cls(
            page_id=page_id,
            book_id=book_id,
            image_url=image_url,
            features=features,
            ground_truth_position=judgment["split_position"],
            confidence=judgment.get("confidence", "medium"),
            reasoning=judgment.get("reasoning", ""),
        )

    def to_dict(self) -> dict:
        return {
            "page_id": self.page_id,
            "book_id": self.book_id,
            "image_url": self.image_url,
            "features": self.features.to_dict() if self.features else None,
            "ground_truth_position": self.ground_truth_position,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrainingExample":
        features = data.get("features")
        created = data.get("created_at")
        return cls(
            page_id=str(data.get("page_id", "")),
            book_id=str(data.get("book_id", "")),
            image_url=str(data.get("image_url", "")),
            features=SplitFeatures.from_dict(features) if isinstance(features, dict) else None,
            ground_truth_position=data.get("ground_truth_position"),
            confidence=data.get("confidence", "medium"),
            reasoning=data.get("reasoning", ""),
            created_at=datetime.fromisoformat(created) if created else _utcnow(),
        )


class TrainingStore:
    def __init__(self, path: Path = DEFAULT_STORE):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, example: TrainingExample) -> None:
        line = json.dumps(example.to_dict(), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()

    def load(self) -> list[TrainingExample]:
        """
        Read every example.  Lines that are not valid JSON or lack required
        structure are skipped with a warning, so one damaged line never hides
        the rest of the corpus.
        """
        if not self.path.exists():
            return []
        examples = []
        skipped = 0
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    examples.append(TrainingExample.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
                    skipped += 1
        if skipped:
            print(
                f"  Warning: skipped {skipped} unreadable line(s) in {self.path}",
                file=sys.stderr,
            )
        return examples

    def labeled_pages(self) -> set[tuple[str, str]]:
        """(book_id, page_id) of every stored example; page ids repeat across books."""
        return {(e.book_id, e.page_id) for e in self.load()}

    def stats(self) -> dict:
        examples = self.load()
        return {
            "total": len(examples),
            "by_book": dict(Counter(e.book_id for e in examples).most_common()),
            "by_confidence": dict(Counter(e.confidence for e in examples)),
            "training_ready": len(examples) >= MIN_TRAINING_EXAMPLES,
        }
