"""Default TCP dial for the connection orchestrator."""

import asyncio
import logging

logger = logging.getLogger(__name__)


class TcpStream:
    """Reader/writer pair of an open TCP connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    @property
    def peer_address(self):
        return self.writer.get_extra_info("peername")

    async def read(self, n: int = -1) -> bytes:
        return await self.reader.read(n)

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()


async def tcp_dial(host: str, port: int, timeout: float) -> TcpStream:
    """Open a TCP connection to ``host:port`` within ``timeout`` seconds."""
    logger.debug(f"Dialing {host}:{port} (timeout {timeout}s)")
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    return TcpStream(reader, writer)
