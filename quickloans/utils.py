"""
Utility functions for the Quick Loans API.
"""

import hmac
import logging
from datetime import date
from typing import Optional

logger = logging.getLogger(__name__)


def verify_access_key(presented: Optional[str], expected: str) -> bool:
    """
    Verify the platform access key presented by a caller.

    Args:
        presented: Key from the X-Api-Key header
        expected: PLATFORM_KEY

    Returns:
        True if the key matches, False otherwise
    """
    if not presented:
        logger.debug("Access key missing")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
    logger.debug(f"Access key verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def age_on(date_of_birth: date, today: Optional[date] = None) -> int:
    """Full years between date_of_birth and today."""
    today = today or date.today()
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years
