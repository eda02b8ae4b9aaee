"""
ffmpeg command lines for the relay slots.

repeatToLocalNginx pulls the configured source and pushes it unchanged into
the local media server. repeatToOptionalOutput pulls from the local media
server (or an explicit source) and pushes to the configured output.
"""

from urllib.parse import urlsplit

from .config import Config
from .document import SlotAddress, SlotName
from .errors import ConfigurationError

SUPPORTED_SCHEMES = {"rtmp", "rtmps", "rtsp", "rtsps", "http", "https", "srt", "udp", "rtp"}

_OUTPUT_FORMATS = {
    "rtmp": "flv",
    "rtmps": "flv",
    "rtsp": "rtsp",
    "rtsps": "rtsp",
}


def validate_uri(value: str, field_name: str) -> str:
    """Check that value looks like a stream URI. Returns it stripped."""
    value = (value or "").strip()
    if not value:
        return value
    parts = urlsplit(value)
    if parts.scheme.lower() not in SUPPORTED_SCHEMES:
        raise ConfigurationError(
            f"{field_name} '{value}' must use one of: {', '.join(sorted(SUPPORTED_SCHEMES))}"
        )
    if not parts.hostname:
        raise ConfigurationError(f"{field_name} '{value}' has no host")
    return value


def validate_address(address: SlotAddress) -> SlotAddress:
    return SlotAddress(
        source=validate_uri(address.source, "source"),
        output=validate_uri(address.output, "output"),
    )


def resolve_endpoints(slot: SlotName, address: SlotAddress, config: Config) -> tuple[str, str]:
    """Return (source, destination) for a slot, raising if a required one is unset."""
    if slot is SlotName.LOCAL:
        if not address.source:
            raise ConfigurationError(f"{slot.value} requires a source address")
        return address.source, config.local_stream_url

    if not address.output:
        raise ConfigurationError(f"{slot.value} requires an output address")
    return address.source or config.local_stream_url, address.output


def output_format(destination: str) -> str:
    return _OUTPUT_FORMATS.get(urlsplit(destination).scheme.lower(), "mpegts")


def build_command(slot: SlotName, address: SlotAddress, config: Config) -> list[str]:
    """Build the ffmpeg argv for a slot."""
    source, destination = resolve_endpoints(slot, validate_address(address), config)

    cmd = [config.ffmpeg_bin, "-hide_banner", "-nostdin", "-loglevel", "info", "-stats"]

    scheme = urlsplit(source).scheme.lower()
    if scheme in ("rtsp", "rtsps"):
        cmd += ["-rtsp_transport", "tcp"]
    elif scheme in ("http", "https"):
        cmd += ["-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_delay_max", "5"]

    cmd += ["-i", source, "-c", "copy", "-f", output_format(destination), destination]
    return cmd
