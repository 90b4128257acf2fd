"""Service for generating stable, sortable ids for locally created entities."""

from ulid import ULID


def generate_id(prefix: str = "") -> str:
    """Generate a ULID-based id. Lexicographic order follows creation time."""
    return f"{prefix}{ULID()}"


def generate_deck_id() -> str:
    return generate_id()


def generate_card_id() -> str:
    return generate_id()


def generate_entry_id() -> str:
    return generate_id("sq_")
