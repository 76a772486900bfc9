"""
Location-only summaries of pydantic validation errors.

pydantic's default error text repeats the offending input. Inputs here can
be personal data or key material, so only field locations and messages
are reported.
"""

from pydantic import ValidationError


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors(include_input=False, include_url=False):
        loc = ".".join(str(p) for p in error.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)
