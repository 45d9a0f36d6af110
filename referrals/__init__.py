"""Referral outreach engine: lifecycle, inbound dispatch, openers and drips."""

__version__ = "1.0.0"
