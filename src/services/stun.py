"""
Mesh Router Agent - STUN Client

Minimal RFC 5389 Binding request used to learn the public address
the agent is seen from.

Usage:
    address = await stun_lookup("stun.l.google.com", 19302)
"""
import asyncio
import ipaddress
import logging
import os
import struct
from typing import Optional

from errors import StunError

logger = logging.getLogger(__name__)

MAGIC_COOKIE = 0x2112A442

BINDING_REQUEST = 0x0001
BINDING_SUCCESS = 0x0101

ATTR_MAPPED_ADDRESS = 0x0001
ATTR_XOR_MAPPED_ADDRESS = 0x0020

FAMILY_IPV4 = 0x01
FAMILY_IPV6 = 0x02

# type, length, cookie, transaction id
HEADER = struct.Struct("!HHI12s")


def build_binding_request(transaction_id: bytes) -> bytes:
    if len(transaction_id) != 12:
        raise ValueError("transaction id must be 12 bytes")
    return HEADER.pack(BINDING_REQUEST, 0, MAGIC_COOKIE, transaction_id)


def _decode_address(value: bytes, transaction_id: bytes, xor: bool) -> str:
    if len(value) < 4:
        raise StunError("address attribute too short")

    family = value[1]
    if family == FAMILY_IPV4:
        size = 4
    elif family == FAMILY_IPV6:
        size = 16
    else:
        raise StunError(f"unknown address family {family:#x}")

    raw = value[4:4 + size]
    if len(raw) != size:
        raise StunError("address attribute truncated")

    if xor:
        key = struct.pack("!I", MAGIC_COOKIE) + transaction_id
        raw = bytes(b ^ k for b, k in zip(raw, key))

    return str(ipaddress.ip_address(raw))


def parse_binding_response(data: bytes, transaction_id: bytes) -> str:
    """Extract the mapped address from a Binding Success response.

    XOR-MAPPED-ADDRESS wins over MAPPED-ADDRESS when both are present.

    Raises:
        StunError: on anything other than a well-formed success reply
            for this transaction
    """
    if len(data) < HEADER.size:
        raise StunError(f"response too short ({len(data)} bytes)")

    msg_type, length, cookie, txn = HEADER.unpack_from(data)
    if msg_type != BINDING_SUCCESS:
        raise StunError(f"unexpected message type {msg_type:#06x}")
    if cookie != MAGIC_COOKIE:
        raise StunError("bad magic cookie")
    if txn != transaction_id:
        raise StunError("transaction id mismatch")

    end = HEADER.size + length
    if end > len(data):
        raise StunError("message truncated")

    mapped: Optional[str] = None
    offset = HEADER.size
    while offset + 4 <= end:
        attr_type, attr_len = struct.unpack_from("!HH", data, offset)
        value = data[offset + 4:offset + 4 + attr_len]
        if len(value) != attr_len:
            raise StunError("attribute truncated")

        if attr_type == ATTR_XOR_MAPPED_ADDRESS:
            return _decode_address(value, transaction_id, xor=True)
        if attr_type == ATTR_MAPPED_ADDRESS and mapped is None:
            mapped = _decode_address(value, transaction_id, xor=False)

        # Attributes are padded to 4 bytes
        offset += 4 + attr_len + (-attr_len % 4)

    if mapped is None:
        raise StunError("no mapped address in response")
    return mapped


class _StunProtocol(asyncio.DatagramProtocol):
    def __init__(self, request: bytes, future: asyncio.Future):
        self.request = request
        self.future = future

    def connection_made(self, transport):
        transport.sendto(self.request)

    def datagram_received(self, data, addr):
        if not self.future.done():
            self.future.set_result(data)

    def error_received(self, exc):
        if not self.future.done():
            self.future.set_exception(exc)

    def connection_lost(self, exc):
        if not self.future.done():
            self.future.set_exception(exc or StunError("socket closed"))


async def _exchange(host: str, port: int, transaction_id: bytes) -> bytes:
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    request = build_binding_request(transaction_id)

    transport, _ = await loop.create_datagram_endpoint(
        lambda: _StunProtocol(request, future),
        remote_addr=(host, port),
    )
    try:
        return await future
    finally:
        transport.close()


async def stun_lookup(host: str, port: int = 19302, timeout: float = 10.0) -> str:
    """Send one Binding request and return the reflexive address.

    ``timeout`` bounds the whole attempt, name resolution included.
    """
    transaction_id = os.urandom(12)
    try:
        data = await asyncio.wait_for(_exchange(host, port, transaction_id), timeout=timeout)
    except asyncio.TimeoutError:
        raise StunError(f"no reply from {host}:{port} within {timeout}s")
    except OSError as e:
        raise StunError(f"cannot reach {host}:{port}: {e}")

    address = parse_binding_response(data, transaction_id)
    logger.debug(f"STUN {host}:{port} mapped address {address}")
    return address
