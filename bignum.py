import logging
import os

DEFAULT_WITNESSES = 10
# Upper bound on redraws for a single witness base. Each draw is accepted with
# probability at least 1/8 for value >= 5, so running out is practically impossible.
MAX_BASE_DRAWS = 1000


def get_r_and_d(n):
    r = 0
    d = n

    while d % 2 == 0:
        r += 1
        d //= 2

    return r, d


def random_base(value, random_bytes=os.urandom):
    """Draw a witness base uniformly from [2, value - 3].

    Reads the byte width of ``value`` and masks it down to its bit length,
    rejecting draws outside the interval. Falls back to base 2 if every draw
    is rejected.
    """
    bits = value.bit_length()
    width = (bits + 7) // 8
    mask = (1 << bits) - 1

    for _ in range(MAX_BASE_DRAWS):
        a = int.from_bytes(random_bytes(width), byteorder='big') & mask
        if 2 <= a < value - 2:
            return a

    logging.debug(f"witness draw exhausted for {bits}-bit value, using base 2")
    return 2


def is_probably_prime(value, witnesses=DEFAULT_WITNESSES, random_bytes=os.urandom):
    """Miller-Rabin probable-prime test.

    Returns False for value <= 1. ``witnesses`` <= 0 falls back to the
    default. A prime always returns True; a composite passes with probability
    at most 4 ** -witnesses.
    """
    if value <= 1:
        return False
    # no base fits in [2, value - 3] below 5
    if value < 5:
        return value != 4

    if witnesses <= 0:
        witnesses = DEFAULT_WITNESSES

    r, d = get_r_and_d(value - 1)

    for _ in range(witnesses):
        a = random_base(value, random_bytes)
        x = pow(a, d, value)

        if x == 1 or x == value - 1:
            continue

        for _ in range(r - 1):
            x = pow(x, 2, value)

            if x == 1:
                return False
            if x == value - 1:
                break
        else:
            return False

    return True
