import csv
import os
from pathlib import Path
from typing import Iterable, List, Dict


def read_csv(path: Path) -> List[Dict[str, str]]:
    if not path.exists():
        return []
    with path.open("r", newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        return list(reader)


def write_csv(
    path: Path,
    rows: Iterable[Dict[str, str]],
    fieldnames: List[str],
    append: bool = False,
) -> None:
    """Append rows, or replace the whole file via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if append:
        with path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            if path.stat().st_size == 0:
                writer.writeheader()
            writer.writerows(rows)
        return

    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    os.replace(tmp_path, path)


def split_list(value: str) -> list[str]:
    return [item.strip() for item in (value or "").split(";") if item.strip()]


def join_list(values: Iterable[str]) -> str:
    return ";".join(value.strip() for value in values if value.strip())
