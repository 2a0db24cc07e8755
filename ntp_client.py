import logging
import socket
import struct
import time

from classclock.sync_config import round_half_up
from classclock.sync_errors import ConfigError, NetworkError, ProtocolError
from classclock.sync_models import SampleResult

logger = logging.getLogger(__name__)

NTP_TIMESTAMP_DELTA = 2208988800  # 1900-01-01 -> 1970-01-01, seconds
TWO_POW_32 = 2**32
PACKET_SIZE = 48

DEFAULT_PORT = 123
DEFAULT_TIMEOUT_MS = 8000
TIMEOUT_MS_MIN = 500
TIMEOUT_MS_MAX = 30000


def unix_ms_to_ntp(ms):
    """Split epoch milliseconds into NTP (seconds, 2**-32 fraction)."""
    ms = int(ms)
    seconds, remainder_ms = divmod(ms, 1000)
    return seconds + NTP_TIMESTAMP_DELTA, (remainder_ms * TWO_POW_32) // 1000


def ntp_to_unix_ms(seconds, fraction):
    return (seconds - NTP_TIMESTAMP_DELTA) * 1000 + (fraction * 1000) // TWO_POW_32


def build_request(t1_ms):
    """SNTP v3 client packet with our send time in the transmit slot."""
    packet = bytearray(PACKET_SIZE)
    packet[0] = 0x1B
    seconds, fraction = unix_ms_to_ntp(t1_ms)
    struct.pack_into("!II", packet, 40, seconds & 0xFFFFFFFF, fraction & 0xFFFFFFFF)
    return bytes(packet)


def parse_response(data, t4_ms):
    """
    Apply the SNTP four-timestamp formulas to a server reply.

    t1 = originate (our send time, echoed back), t2 = server receive,
    t3 = server transmit, t4 = our receive time.
    """
    if len(data) < PACKET_SIZE:
        raise ProtocolError(f"NTP response too short: {len(data)} bytes")

    unpacked = struct.unpack("!12I", data[:PACKET_SIZE])
    t1 = ntp_to_unix_ms(unpacked[6], unpacked[7])
    t2 = ntp_to_unix_ms(unpacked[8], unpacked[9])
    t3 = ntp_to_unix_ms(unpacked[10], unpacked[11])
    t4 = int(t4_ms)

    delay = (t4 - t1) - (t3 - t2)
    offset = ((t2 - t1) + (t3 - t4)) / 2

    return SampleResult(
        offset_ms=round_half_up(offset),
        rtt_ms=max(0, round_half_up(delay)),
        server_epoch_ms=t3,
        measured_at=t4,
    )


class NTPClient:
    """Desktop-side UDP exchange backing the ``timeSync.ntp`` bridge call."""

    def __init__(self, now_ms=None):
        self.now_ms = now_ms or (lambda: time.time_ns() // 1_000_000)

    def query(self, host, port=DEFAULT_PORT, timeout_ms=DEFAULT_TIMEOUT_MS):
        """
        Query a single NTP server once.
        Returns: SampleResult
        Raises: ConfigError, NetworkError, ProtocolError
        """
        host = str(host or "").strip()
        if not host:
            raise ConfigError("NTP host must not be empty")

        port = int(port)
        if not 1 <= port <= 65535:
            raise ConfigError(f"Invalid NTP port: {port}")

        timeout_ms = int(timeout_ms)
        if not TIMEOUT_MS_MIN <= timeout_ms <= TIMEOUT_MS_MAX:
            raise ConfigError(f"Invalid timeoutMs: {timeout_ms}")

        address = self._resolve(host)
        t1_ms = self.now_ms()
        msg = build_request(t1_ms)

        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                s.settimeout(timeout_ms / 1000)
                s.sendto(msg, (address, port))
                data, _ = s.recvfrom(1024)
                t4_ms = self.now_ms()
        except socket.timeout as exc:
            raise NetworkError(f"NTP request timed out ({timeout_ms}ms)") from exc
        except OSError as exc:
            raise NetworkError(f"NTP request to {host}:{port} failed: {exc}") from exc

        result = parse_response(data, t4_ms)
        logger.debug(
            "NTP %s:%s offset=%sms rtt=%sms", host, port, result.offset_ms, result.rtt_ms
        )
        return result

    @staticmethod
    def _resolve(host):
        """IPv4 address for ``host``; falls back to the literal on lookup failure."""
        try:
            infos = socket.getaddrinfo(host, None, socket.AF_INET, socket.SOCK_DGRAM)
        except OSError:
            return host
        return infos[0][4][0] if infos else host
