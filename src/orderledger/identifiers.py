"""Order and certificate identifier allocation."""

import random
from datetime import datetime, timezone
from typing import Iterable

ORDER_PREFIX = "ORD"
CERTIFICATE_PREFIX = "GC"

# The first order of a year gets sequence 1001
SEQUENCE_FLOOR = 1000


def parse_order_id(order_id: str) -> tuple[int, int] | None:
    """
    Parse an order ID into (year, sequence).

    Accepts "ORD-<year>-<sequence>-<salt>" and the older saltless
    "ORD-<year>-<sequence>". Returns None for anything else.
    """
    parts = order_id.split("-")
    if len(parts) not in (3, 4) or parts[0] != ORDER_PREFIX:
        return None
    year, sequence = parts[1], parts[2]
    if not (year.isdigit() and sequence.isdigit()):
        return None
    if len(parts) == 4 and not parts[3].isdigit():
        return None
    return int(year), int(sequence)


def next_sequence(existing_ids: Iterable[str], year: int) -> int:
    """
    Return the next order sequence for a year.

    Only well-formed IDs from the same year count. Malformed IDs are skipped
    rather than read as zero, so they can never pull the result below the
    true maximum.
    """
    highest = SEQUENCE_FLOOR
    for order_id in existing_ids:
        parsed = parse_order_id(order_id)
        if parsed is None:
            continue
        id_year, sequence = parsed
        if id_year == year and sequence > highest:
            highest = sequence
    return highest + 1


def next_order_id(
    existing_ids: Iterable[str],
    year: int,
    rng: random.Random | None = None,
) -> str:
    """
    Allocate the next order ID: ORD-<year>-<sequence>-<salt>.

    The salt is a random 4-digit number that keeps two orders created in the
    same instant visually distinct; everything else is deterministic.
    """
    rng = rng or random.Random()
    sequence = next_sequence(existing_ids, year)
    salt = rng.randint(1000, 9999)
    return f"{ORDER_PREFIX}-{year}-{sequence}-{salt}"


def generate_certificate_code(
    existing_codes: Iterable[str],
    issued: datetime | None = None,
    order_id: str | None = None,
    rng: random.Random | None = None,
) -> str:
    """
    Generate a certificate code: GC-<YYYYMMDD>-<suffix>.

    The suffix is the last four characters of the purchasing order ID when
    there is one, otherwise four random digits. A suffix that collides with
    an existing code (case-insensitively) is redrawn at random.
    """
    rng = rng or random.Random()
    issued = issued or datetime.now(timezone.utc)
    taken = {code.upper() for code in existing_codes}
    date_str = issued.strftime("%Y%m%d")

    suffix = order_id[-4:].upper() if order_id else str(rng.randint(1000, 9999))
    code = f"{CERTIFICATE_PREFIX}-{date_str}-{suffix}"
    attempts = 0
    while code in taken:
        attempts += 1
        # Widen the suffix once the 4-digit space for the day is crowded
        upper = 9999 if attempts < 100 else 999999
        code = f"{CERTIFICATE_PREFIX}-{date_str}-{rng.randint(1000, upper)}"
    return code
