"""
LAN Hub - Relay transport.

The transport contract is a single coroutine: send one typed request and
return the decoded success response. Every failure surfaces as
``TransportError``: connection problems, timeouts, malformed responses and
non-2xx statuses alike.

``RelayClient`` opens one TCP connection per request. ``LocalTransport``
answers from an in-process ``RelayState`` and can simulate an unreachable
relay.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .constants import DEFAULT_RELAY_PORT, LOCALHOST, MAX_REQUEST_SIZE, REQUEST_TIMEOUT
from .errors import ErrorCode, ProtocolError, TransportError
from .protocol import RequestType, decode_line, encode_line, encode_request

logger = logging.getLogger(__name__)


class Transport:
    """Base class for relay transports."""

    async def _exchange(self, request_type: RequestType, payload: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def request(
        self, request_type: RequestType, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Send one request to the relay.

        Args:
            request_type: Request kind
            payload: Request payload

        Returns:
            Response dictionary (status 2xx)

        Raises:
            TransportError: On network failure or a non-2xx response
        """
        response = await self._exchange(RequestType(request_type), payload or {})
        return check_response(request_type, response)


def check_response(request_type: RequestType, response: Any) -> Dict[str, Any]:
    """Validate a decoded response, raising ``TransportError`` for failures."""
    if not isinstance(response, dict):
        raise TransportError(
            ErrorCode.E204_INVALID_RESPONSE,
            f"Malformed response to {RequestType(request_type).value}",
        )

    status = response.get("status", 200)
    if not isinstance(status, int) or not 200 <= status < 300:
        raise TransportError(
            ErrorCode.E203_BAD_STATUS,
            f"{RequestType(request_type).value} rejected: {response.get('error', 'unknown error')}",
            {"status": status},
            status=status if isinstance(status, int) else None,
        )
    return response


class RelayClient(Transport):
    """Transport speaking JSON lines to a relay over TCP."""

    def __init__(self, host: str = LOCALHOST, port: int = DEFAULT_RELAY_PORT, timeout: float = REQUEST_TIMEOUT):
        """
        Initialize client.

        Args:
            host: Relay host
            port: Relay port
            timeout: Seconds allowed for one round trip
        """
        self.host = host
        self.port = port
        self.timeout = timeout

    async def _exchange(self, request_type: RequestType, payload: Dict[str, Any]) -> Any:
        try:
            data = encode_request(request_type, payload)
        except ProtocolError as e:
            raise TransportError(ErrorCode.E200_TRANSPORT_ERROR, e.message, e.details, status=e.status)

        try:
            return await asyncio.wait_for(self._round_trip(data), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"Relay did not answer {request_type.value} within {self.timeout}s",
                {"host": self.host, "port": self.port},
            )
        except (OSError, ValueError) as e:
            raise TransportError(
                ErrorCode.E201_CONNECTION_FAILED,
                f"Cannot reach relay at {self.host}:{self.port}: {e}",
                {"host": self.host, "port": self.port},
            )

    async def _round_trip(self, data: bytes) -> Any:
        reader, writer = await asyncio.open_connection(self.host, self.port, limit=MAX_REQUEST_SIZE)
        try:
            writer.write(data)
            await writer.drain()
            line = await reader.readline()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing relay connection: {e}")

        if not line:
            raise TransportError(ErrorCode.E204_INVALID_RESPONSE, "Relay closed the connection")
        try:
            return decode_line(line)
        except ProtocolError as e:
            raise TransportError(ErrorCode.E204_INVALID_RESPONSE, e.message)


class LocalTransport(Transport):
    """
    In-process transport answering from a ``RelayState``.

    Setting ``online`` to False makes every request fail as if the relay
    were unreachable. ``requests`` records the kinds sent, in order.
    """

    def __init__(self, state):
        self.state = state
        self.online = True
        self.requests = []

    async def _exchange(self, request_type: RequestType, payload: Dict[str, Any]) -> Any:
        if not self.online:
            raise TransportError(ErrorCode.E201_CONNECTION_FAILED, "Relay unreachable")
        self.requests.append(request_type)
        await asyncio.sleep(0)

        # Both directions go through the wire encoding
        try:
            body = decode_line(encode_request(request_type, payload))
            return decode_line(encode_line(self.state.handle(body)))
        except ProtocolError as e:
            raise TransportError(ErrorCode.E200_TRANSPORT_ERROR, e.message, e.details, status=e.status)
