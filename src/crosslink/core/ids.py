"""
Correlation id generators.
"""

import itertools
import secrets
import string
from typing import Callable, Union

ID_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits
ID_SIZE = 22

IdGenerator = Callable[[], Union[str, int]]


def string_id_generator(size: int = ID_SIZE) -> Callable[[], str]:
    """
    Return a generator of random fixed-length alphanumeric ids.

    22 symbols from a 62-symbol alphabet give about 131 bits of entropy.
    """
    if size <= 0:
        raise ValueError(f"Id size must be positive, got {size}")

    def generate() -> str:
        return "".join(secrets.choice(ID_ALPHABET) for _ in range(size))

    return generate


def incrementing_id_generator(start: int = 0) -> Callable[[], int]:
    """
    Return a generator of 0, 1, 2, ...

    Ids are only unique within the lifetime of the returned callable.
    """
    counter = itertools.count(start)
    return lambda: next(counter)


generate_id = string_id_generator()
