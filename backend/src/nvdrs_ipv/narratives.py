"""
Narrative source: read the wide NVDRS extract into long-format Narratives.

The extract has one row per incident with one text column per source (law
enforcement, coroner/medical examiner) and optional manual IPV flags. Each
row becomes two Narratives, primary first. Empty texts are kept so the
pipeline records them as ``skipped_empty``.
"""

import csv
import logging

from nvdrs_ipv.schemas import Narrative

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "t", "yes", "y"}
_FALSE_VALUES = {"0", "false", "f", "no", "n"}


def parse_flag(value: str | None) -> bool | None:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


def load_narratives_csv(
    path: str,
    id_column: str = "IncidentID",
    primary_column: str = "NarrativeLE",
    secondary_column: str = "NarrativeCME",
    primary_flag_column: str = "ipv_manualLE",
    secondary_flag_column: str = "ipv_manualCME",
):
    """Yield Narratives from a CSV file in file order."""
    columns = {"primary": (primary_column, primary_flag_column),
               "secondary": (secondary_column, secondary_flag_column)}

    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        header = reader.fieldnames or []
        missing = [c for c in (id_column, primary_column, secondary_column) if c not in header]
        if missing:
            raise ValueError(f"{path}: missing required columns: {', '.join(missing)}")

        n_rows = 0
        for row_num, row in enumerate(reader, start=1):
            case_id = (row.get(id_column) or "").strip()
            if not case_id:
                logger.warning("%s row %d: no %s, skipping", path, row_num, id_column)
                continue
            n_rows += 1
            for narrative_type, (text_column, flag_column) in columns.items():
                yield Narrative(
                    case_id=case_id,
                    narrative_type=narrative_type,
                    raw_text=row.get(text_column),
                    row_num=row_num,
                    manual_flag=parse_flag(row.get(flag_column)),
                )
        logger.info("Loaded %d incidents from %s", n_rows, path)
