"""
Print the Alembic operations that would bring the database in line with the
ORM models. Prints nothing when the schema is in sync.

Usage:
  python scripts/diff_schema.py [properties-category]
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ilves.config import DEFAULT_CATEGORY
from app.ilves.persistence import diff


def main() -> None:
    category = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_CATEGORY
    out = diff("ilves", category)
    if out:
        print(out)


if __name__ == "__main__":
    main()
