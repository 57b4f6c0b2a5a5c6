"""ID generation utilities."""

import secrets

from nanoid import generate

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
ID_LENGTH = 12


def gen_id(prefix: str) -> str:
    return f"{prefix}{generate(ALPHABET, ID_LENGTH)}"


def user_id() -> str:
    return gen_id("us_")


def task_id() -> str:
    return gen_id("tk_")


def offer_id() -> str:
    return gen_id("of_")


def transaction_id() -> str:
    return gen_id("tx_")


def expense_id() -> str:
    return gen_id("ex_")


def ledger_id() -> str:
    return gen_id("le_")


def review_id() -> str:
    return gen_id("rv_")


def escrow_ref() -> str:
    return gen_id("pi_")


def api_key() -> str:
    return f"pk_{secrets.token_urlsafe(24)}"
