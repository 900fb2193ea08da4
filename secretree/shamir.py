"""Shamir's Secret Sharing over GF(2^8).

A secret of arbitrary length is split byte by byte: each byte becomes the
intercept of a random polynomial, and each share holds the value of every
polynomial at one x coordinate, with that coordinate stored as the last byte.
"""

from __future__ import annotations

import random
import secrets
from dataclasses import dataclass
from typing import Sequence

__all__ = [
    "SHARE_OVERHEAD",
    "LOG_TABLE",
    "EXP_TABLE",
    "Polynomial",
    "make_polynomial",
    "interpolate_polynomial",
    "add",
    "mult",
    "div",
    "split",
    "combine",
]

# Each share is one byte longer than the secret: the x coordinate tag.
SHARE_OVERHEAD = 1

# The field is GF(2^8) reduced by x^8 + x^4 + x^3 + x + 1, generated by 0xe5.
_REDUCING_POLYNOMIAL = 0x11B
_GENERATOR = 0xE5


def _slow_mult(a: int, b: int) -> int:
    """Multiply in GF(2^8) bit by bit; used only to build the tables."""
    product = 0
    while b:
        if b & 1:
            product ^= a
        a <<= 1
        if a & 0x100:
            a ^= _REDUCING_POLYNOMIAL
        b >>= 1
    return product


def _build_tables() -> tuple[bytes, bytes]:
    exp = bytearray(256)
    log = bytearray(256)
    value = 1
    for power in range(256):
        exp[power] = value
        # g^255 == 1, so log(1) ends up as 255; log(0) stays 0.
        log[value] = power
        value = _slow_mult(value, _GENERATOR)
    return bytes(log), bytes(exp)


LOG_TABLE, EXP_TABLE = _build_tables()


def add(a: int, b: int) -> int:
    """Add two elements of GF(2^8); the same operation subtracts."""
    return a ^ b


def mult(a: int, b: int) -> int:
    """Multiply two elements of GF(2^8) using the log/exp tables."""
    product = EXP_TABLE[(LOG_TABLE[a] + LOG_TABLE[b]) % 255]
    if a == 0 or b == 0:
        return 0
    return product


def div(a: int, b: int) -> int:
    """Divide two elements of GF(2^8); raises ZeroDivisionError when b is 0."""
    if b == 0:
        raise ZeroDivisionError("divide by zero")
    quotient = EXP_TABLE[(LOG_TABLE[a] - LOG_TABLE[b]) % 255]
    if a == 0:
        return 0
    return quotient


@dataclass(frozen=True)
class Polynomial:
    """A polynomial over GF(2^8); coefficients[0] is the intercept."""

    coefficients: bytes

    def evaluate(self, x: int) -> int:
        """Return the polynomial's value at x, by Horner's method."""
        if x == 0:
            return self.coefficients[0]
        result = self.coefficients[-1]
        for coefficient in reversed(self.coefficients[:-1]):
            result = add(mult(result, x), coefficient)
        return result


def make_polynomial(intercept: int, degree: int) -> Polynomial:
    """Build a random polynomial of the given degree with a fixed intercept."""
    return Polynomial(bytes([intercept]) + secrets.token_bytes(degree))


def interpolate_polynomial(
    x_samples: Sequence[int], y_samples: Sequence[int], x: int
) -> int:
    """Evaluate at x the Lagrange polynomial through the sample points."""
    result = 0
    for i, (x_i, y_i) in enumerate(zip(x_samples, y_samples)):
        basis = 1
        for j, x_j in enumerate(x_samples):
            if i == j:
                continue
            basis = mult(basis, div(add(x, x_j), add(x_i, x_j)))
        result = add(result, mult(y_i, basis))
    return result


def split(secret: bytes, parts: int, threshold: int) -> list[bytes]:
    """Split a secret into `parts` shares, any `threshold` of which recover it.

    Each share is one byte longer than the secret: its last byte is the x
    coordinate at which the share's polynomials were evaluated.
    """
    if parts < threshold:
        raise ValueError("parts cannot be less than threshold")
    if parts > 255:
        raise ValueError("parts cannot exceed 255")
    if threshold < 2:
        raise ValueError("threshold must be at least 2")
    if threshold > 255:
        raise ValueError("threshold cannot exceed 255")
    secret = bytes(secret)
    if not secret:
        raise ValueError("cannot split an empty secret")

    # x = 0 would reveal the secret itself, hence the shift by one.
    x_coordinates = [x + 1 for x in random.SystemRandom().sample(range(255), parts)]
    shares = [bytearray(len(secret) + SHARE_OVERHEAD) for _ in range(parts)]
    for share, x in zip(shares, x_coordinates):
        share[-1] = x

    for index, value in enumerate(secret):
        polynomial = make_polynomial(value, threshold - 1)
        for share, x in zip(shares, x_coordinates):
            share[index] = polynomial.evaluate(x)

    return [bytes(share) for share in shares]


def combine(parts: Sequence[bytes]) -> bytes:
    """Reconstruct a secret from at least `threshold` shares produced by split."""
    if len(parts) < 2:
        raise ValueError("less than two parts cannot be used to reconstruct the secret")
    part_length = len(parts[0])
    if part_length < 2:
        raise ValueError("parts must be at least two bytes")
    if any(len(part) != part_length for part in parts[1:]):
        raise ValueError("all parts must be the same length")

    x_samples = [part[-1] for part in parts]
    if len(set(x_samples)) != len(x_samples):
        raise ValueError("duplicate part detected")

    return bytes(
        interpolate_polynomial(x_samples, [part[index] for part in parts], 0)
        for index in range(part_length - SHARE_OVERHEAD)
    )