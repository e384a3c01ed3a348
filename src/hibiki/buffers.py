"""Checked fill of caller-owned buffers (the two-phase retrieval protocol).

Phase one asks for the payload length; phase two hands in a buffer of at
least ``length + 1`` bytes. An undersized buffer is reported with
:class:`BufferTooSmallError` before anything is written.
"""

from __future__ import annotations

from typing import Any

from hibiki.errors import BufferTooSmallError, CallerContractError


def fill_buffer(data: bytes, buffer: Any) -> int:
    """Copy *data* plus a NUL terminator into *buffer*.

    Args:
        data: Encoded payload.
        buffer: Any writable, contiguous object supporting the buffer
            protocol (``bytearray``, a writable ``memoryview``, ``array("B")``).

    Returns:
        Number of payload bytes written, excluding the terminator.
    """
    try:
        view = memoryview(buffer)
    except TypeError as e:
        raise CallerContractError(f"Object of type {type(buffer).__name__} is not a buffer") from e
    if view.readonly:
        raise CallerContractError("Buffer is read-only")
    if not view.contiguous:
        raise CallerContractError("Buffer must be contiguous")

    required = len(data) + 1
    if view.nbytes < required:
        raise BufferTooSmallError(required, view.nbytes)

    view = view.cast("B")
    view[: len(data)] = data
    view[len(data)] = 0
    return len(data)
