from __future__ import annotations

from .constants import (
    ERR_NOT_CONNECTED,
    K_BODY,
    K_ERROR,
    K_FROM,
    K_TO,
    MAX_MESSAGE_LEN,
    MAX_NAME_LEN,
)


def byte_len(s: str) -> int:
    return len(s.encode("utf-8"))


def make_envelope(
    *,
    to: str = "",
    src: str = "",
    body: str = "",
    error: bool = False,
) -> dict:
    return {
        K_TO: to,
        K_FROM: src,
        K_BODY: body,
        K_ERROR: bool(error),
    }


def make_error(text: str, *, to: str = "") -> dict:
    return make_envelope(to=to, body=text, error=True)


def not_connected_error(recipient: str, *, to: str = "") -> dict:
    return make_error(ERR_NOT_CONNECTED.format(name=recipient), to=to)


def validate_envelope(env: dict) -> None:
    """Check shape and size limits of an envelope received from a peer.

    Raises TypeError for structural problems and ValueError for limit
    violations. The sender field is not checked here; the relay overwrites it.
    """

    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in (K_TO, K_BODY):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    to = env[K_TO]
    if not isinstance(to, str):
        raise TypeError("recipient must be a string")
    if byte_len(to) > MAX_NAME_LEN:
        raise ValueError(
            f"recipient name of length {byte_len(to)}; maximum is {MAX_NAME_LEN}"
        )

    body = env[K_BODY]
    if not isinstance(body, str):
        raise TypeError("message content must be a string")
    if byte_len(body) > MAX_MESSAGE_LEN:
        raise ValueError(
            f"message of length {byte_len(body)}; maximum is {MAX_MESSAGE_LEN}"
        )

    if K_ERROR in env and not isinstance(env[K_ERROR], bool):
        raise TypeError("error flag must be a boolean")


def check_outgoing(to: str, body: str) -> str | None:
    """Client-side limit check; returns a user-facing error or None."""

    if byte_len(to) > MAX_NAME_LEN:
        return f"Recipient username cannot be longer than {MAX_NAME_LEN} characters"
    if byte_len(body) > MAX_MESSAGE_LEN:
        return f"Message cannot be longer than {MAX_MESSAGE_LEN} characters"
    return None
