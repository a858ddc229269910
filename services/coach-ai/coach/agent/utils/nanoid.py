import secrets
import string

ALPHABET = string.digits + string.ascii_letters
SIZE = 12


def nanoid(size: int = SIZE) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(size))
