"""The spoofdpi executable and its command-line contract.

spoofdpi changed its flags between releases: older builds take the listen
address and port as separate flags and resolve DNS over HTTPS themselves,
while 1.2+ expects ``host:port`` and dropped the DNS tuning in favour of HTTPS
splitting options. Argument construction is therefore isolated in
:class:`ArgumentProfile` objects keyed by the release they target, and the
profile is either configured or detected from ``spoofdpi --version``.

Example:
    path = locate_binary()
    profile = get_profile("1.2")
    args = profile.arguments(8080)
"""

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from loguru import logger

from spoofdpi_supervisor.core.exceptions import SpawnFailedError
from spoofdpi_supervisor.core.lib.command_runner import CommandRunner

BINARY_NAME: Final = "spoofdpi"
LISTEN_ADDR: Final = "127.0.0.1"
DNS_ADDR: Final = "8.8.8.8"


def install_locations() -> list[Path]:
    """Well-known install locations, most likely first."""
    home = Path.home()
    return [
        Path("/opt/homebrew/bin") / BINARY_NAME,
        Path("/usr/local/bin") / BINARY_NAME,
        home / "go" / "bin" / BINARY_NAME,
        home / ".local" / "bin" / BINARY_NAME,
    ]


def bundled_location() -> Path:
    return Path(__file__).resolve().parent.parent.parent / "bin" / BINARY_NAME


def locate_binary(
    candidates: Sequence[Path] | None = None,
    bundled: Path | None = None,
) -> Path | None:
    """Return the first existing spoofdpi executable, or None."""
    search = list(candidates if candidates is not None else install_locations())
    search.append(bundled if bundled is not None else bundled_location())
    for path in search:
        if path.is_file():
            return path
    logger.debug(f"spoofdpi not found in {[str(p) for p in search]}")
    return None


@dataclass(frozen=True)
class ArgumentProfile:
    """Argument shape understood by one range of spoofdpi releases.

    Attributes:
        version: Oldest release the profile applies to
        build: Function producing the arguments for a listen address and port
        supports_system_proxy: Whether the release has ``--system-proxy``
    """

    version: tuple[int, ...]
    build: Callable[[str, int], list[str]]
    supports_system_proxy: bool = True
    system_proxy_flag: str = "--system-proxy"

    @property
    def name(self) -> str:
        return ".".join(str(part) for part in self.version)

    def arguments(self, port: int, listen_addr: str = LISTEN_ADDR, system_proxy: bool = False) -> list[str]:
        args = self.build(listen_addr, port)
        if system_proxy and self.supports_system_proxy:
            args.append(self.system_proxy_flag)
        return args


def _v1_2(listen_addr: str, port: int) -> list[str]:
    return [
        "--listen-addr", f"{listen_addr}:{port}",
        "--https-disorder",
        "--https-fake-count", "7",
        "--https-split-mode", "chunk",
        "--https-chunk-size", "5",
    ]


def _v0_12(listen_addr: str, port: int) -> list[str]:
    return [
        "--listen-addr", listen_addr,
        "--listen-port", str(port),
        "--dns-addr", DNS_ADDR,
        "--enable-doh",
        "--window-size", "0",
    ]


def _v0_10(listen_addr: str, port: int) -> list[str]:
    return [
        "-addr", listen_addr,
        "-port", str(port),
        "-dns-addr", DNS_ADDR,
        "-enable-doh",
        "-window-size", "0",
    ]


PROFILES: Final = (
    ArgumentProfile((1, 2), _v1_2),
    ArgumentProfile((0, 12), _v0_12),
    ArgumentProfile((0, 10), _v0_10, supports_system_proxy=False),
)
DEFAULT_PROFILE: Final = PROFILES[0]

VERSION_PATTERN: Final = re.compile(r"v?(\d+)\.(\d+)(?:\.(\d+))?")


def parse_version(text: str) -> tuple[int, ...] | None:
    match = VERSION_PATTERN.search(text)
    if not match:
        return None
    return tuple(int(part) for part in match.groups() if part is not None)


def profile_for_version(version: tuple[int, ...]) -> ArgumentProfile:
    """Newest profile not newer than the given release."""
    for profile in PROFILES:
        if version >= profile.version:
            return profile
    return PROFILES[-1]


def get_profile(name: str) -> ArgumentProfile:
    """Look up a profile by version string such as ``"0.12"`` or ``"1.2.1"``.

    Raises:
        ValueError: If the string is not a version
    """
    version = parse_version(name)
    if version is None:
        raise ValueError(f"Unknown spoofdpi version: {name}")
    return profile_for_version(version)


def detect_profile(runner: CommandRunner, binary: Path) -> ArgumentProfile:
    """Pick the profile matching the installed binary's reported version."""
    try:
        result = runner.run(str(binary), ["--version"])
    except SpawnFailedError as e:
        logger.warning(f"Could not query spoofdpi version: {e}")
        return DEFAULT_PROFILE

    version = parse_version(result.stdout + result.stderr)
    if version is None:
        logger.warning(f"Unrecognised spoofdpi version output, assuming {DEFAULT_PROFILE.name}")
        return DEFAULT_PROFILE

    profile = profile_for_version(version)
    logger.info(f"spoofdpi {'.'.join(map(str, version))} detected, using {profile.name} arguments")
    return profile
