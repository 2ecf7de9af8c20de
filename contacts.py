"""
Contact upload: CSV parsing, duplicate removal and sample data
"""
import io
from typing import List, Tuple

import pandas as pd
from loguru import logger

from models import Contact

# Accepted header spellings, first match wins
COLUMN_ALIASES = {
    "first_name": ["firstName", "first_name"],
    "last_name": ["lastName", "last_name"],
    "domain": ["domain", "company_domain"],
    "email": ["email"],
}

SAMPLE_CONTACTS = [
    Contact(first_name="Tim", last_name="Zheng", domain="apollo.io", email="tim@apollo.io"),
    Contact(first_name="John", last_name="Doe", domain="salesforce.com"),
    Contact(first_name="Jane", last_name="Smith", domain="hubspot.com"),
    Contact(first_name="Mike", last_name="Johnson", domain="google.com"),
    Contact(first_name="Sarah", last_name="Wilson", domain="microsoft.com"),
]


class ContactParseError(ValueError):
    """Uploaded file could not be read as CSV"""
    pass


def _pick(row: dict, field: str) -> str:
    for column in COLUMN_ALIASES[field]:
        value = row.get(column)
        if value:
            return value.strip()
    return ""


def parse_contacts_csv(text: str) -> List[Contact]:
    """
    Parse uploaded CSV text into contacts

    Rows without a first or last name are dropped.

    Args:
        text: Raw CSV content with a header row

    Returns:
        Contacts in file order
    """
    if not text or not text.strip():
        return []

    try:
        df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False, skipinitialspace=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ContactParseError(f"Error parsing CSV: {e}")

    df.columns = [str(column).strip() for column in df.columns]

    contacts = []
    skipped = 0
    for row in df.to_dict(orient="records"):
        first_name = _pick(row, "first_name")
        last_name = _pick(row, "last_name")
        if not first_name or not last_name:
            skipped += 1
            continue
        contacts.append(Contact(
            first_name=first_name,
            last_name=last_name,
            domain=_pick(row, "domain"),
            email=_pick(row, "email"),
        ))

    if skipped:
        logger.debug(f"Skipped {skipped} rows without first and last name")
    logger.info(f"Parsed {len(contacts)} contacts from CSV")
    return contacts


def remove_duplicates(contacts: List[Contact]) -> Tuple[List[Contact], List[Contact]]:
    """
    Drop repeated contacts, keyed by first name, last name and domain

    Returns:
        (unique contacts in original order, removed duplicates)
    """
    seen = set()
    unique = []
    duplicates = []
    for contact in contacts:
        key = contact.dedupe_key()
        if key in seen:
            duplicates.append(contact)
            continue
        seen.add(key)
        unique.append(contact)
    return unique, duplicates
