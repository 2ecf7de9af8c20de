"""
CSV export of enriched contacts
"""
import io
from datetime import date
from typing import Dict, List, Optional, Sequence

import pandas as pd
from loguru import logger

from models import EnrichedContact

EXPORT_FIELDS = [
    "firstName", "lastName", "email", "title", "company", "domain",
    "linkedinUrl", "location", "phone", "enrichmentStatus", "qualityScore", "error",
]


class ExportError(Exception):
    """Nothing to export"""
    pass


def format_export_row(contact: EnrichedContact) -> Dict[str, str]:
    """Flatten one enriched contact into export column values"""
    values = {
        "firstName": contact.first_name,
        "lastName": contact.last_name,
        "email": contact.best_email,
        "title": contact.title,
        "company": contact.company,
        "domain": contact.domain,
        "linkedinUrl": contact.linkedin_url,
        "location": contact.location,
        "phone": contact.best_phone,
        "enrichmentStatus": contact.enrichment_status.value,
        "qualityScore": contact.quality_score,
        "error": contact.error,
    }
    return {field: "" if values[field] is None else str(values[field]) for field in EXPORT_FIELDS}


def format_export_rows(contacts: Sequence[EnrichedContact]) -> List[Dict[str, str]]:
    return [format_export_row(contact) for contact in contacts]


def export_csv(contacts: Sequence[EnrichedContact]) -> str:
    """
    Render enriched contacts as CSV text

    Raises:
        ExportError: If there is nothing to export
    """
    if not contacts:
        raise ExportError("No enriched data to export")

    df = pd.DataFrame(format_export_rows(contacts), columns=EXPORT_FIELDS)
    content = df.to_csv(index=False)
    logger.info(f"Exported {len(contacts)} enriched contacts")
    return content


def read_export_csv(text: str) -> List[Dict[str, str]]:
    """Read an exported CSV back into rows of strings"""
    df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    return df.to_dict(orient="records")


def export_filename(day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"apollo_enriched_{day.isoformat()}.csv"
