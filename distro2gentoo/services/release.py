"""Gentoo release service: mirrors, stage3 list, download and verification.

Mirror and stage3 selection talk to public HTTP endpoints with aiohttp.
Integrity checks use the host's gpg for signatures and hashlib for the
SHA512 recorded in the DIGESTS file. Any signature or checksum problem
raises IntegrityError before the tarball is unpacked.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import aiohttp

from distro2gentoo.logging import LoggerFactory, ThrottledLogger
from distro2gentoo.storage.commands import run_command
from distro2gentoo.storage.exceptions import CommandError, IntegrityError, ReleaseError


log = LoggerFactory.for_release()

IP2C_URL = "https://ip2c.org/self"
MIRRORS_URL = "https://api.gentoo.org/mirrors/distfiles.xml"
LATEST_STAGE3 = "latest-stage3.txt"

CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class Stage3Release:
    name: str
    path: str
    url: str
    size: Optional[int] = None

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def digests_url(self) -> str:
        return f"{self.url}.DIGESTS"

    @property
    def signature_url(self) -> str:
        return f"{self.url}.asc"


# ==============================================================================
# Parsing
# ==============================================================================


def parse_country(text: str) -> Optional[str]:
    """Country code from an ip2c.org answer (``1;US;USA;United States``)."""
    fields = text.strip().split(";")
    if len(fields) < 2 or fields[0] != "1" or not fields[1]:
        return None
    return fields[1]


def parse_mirrors(xml_text: str, country: Optional[str] = None) -> list[str]:
    """Mirror URLs from distfiles.xml, limited to one country when given."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ReleaseError(f"Invalid mirror list: {e}", MIRRORS_URL) from e
    urls = []
    for group in root.iter("mirrorgroup"):
        if country and group.get("country") != country:
            continue
        for uri in group.iter("uri"):
            if uri.text and uri.text.strip() not in urls:
                urls.append(uri.text.strip())
    return urls


def choose_mirror(mirrors: Sequence[str], fallback: str) -> str:
    for mirror in mirrors:
        if mirror.startswith("https://"):
            return mirror
    return fallback


def _join(base: str, *parts: str) -> str:
    return "/".join([base.rstrip("/"), *(part.strip("/") for part in parts)])


def parse_stage3_list(text: str, mirror: str, arch: str) -> list[Stage3Release]:
    """Releases listed in latest-stage3.txt (comments and PGP armour skipped)."""
    releases = []
    in_signature = False
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("-----BEGIN PGP SIGNATURE"):
            in_signature = True
            continue
        if line.startswith("-----END PGP SIGNATURE"):
            in_signature = False
            continue
        if in_signature or not line or line.startswith(("#", "-----", "Hash:")):
            continue
        fields = line.split()
        path = fields[0]
        name = path.rsplit("/", 1)[-1].split(".tar", 1)[0]
        size = int(fields[1]) if len(fields) > 1 and fields[1].isdigit() else None
        releases.append(
            Stage3Release(
                name=name,
                path=path,
                url=_join(mirror, "releases", arch, "autobuilds", path),
                size=size,
            )
        )
    return releases


def choose_stage3(
    releases: Sequence[Stage3Release], arch: str, flavour: str = "openrc"
) -> Optional[Stage3Release]:
    """The ``stage3-<arch>-<flavour>-<date>`` release, if listed."""
    prefix = f"stage3-{arch}-{flavour}-"
    for release in releases:
        rest = release.name[len(prefix) :] if release.name.startswith(prefix) else ""
        if rest[:1].isdigit():
            return release
    return None


def parse_digests(text: str, filename: str, algorithm: str = "SHA512") -> Optional[str]:
    """Hash recorded for ``filename`` under the ``# <algorithm> HASH`` header."""
    current = None
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("#"):
            words = line.lstrip("#").split()
            current = words[0].upper() if len(words) >= 2 and words[1].upper() == "HASH" else None
            continue
        if current != algorithm.upper():
            continue
        fields = line.split()
        if len(fields) == 2 and fields[1] == filename:
            return fields[0].lower()
    return None


def clearsigned_text(text: str) -> str:
    """Body of an OpenPGP clear-signed message; empty when there is none.

    Lines outside the signed block are dropped and dash-escaping is undone.
    """
    lines = iter(text.splitlines())
    for line in lines:
        if line.strip() == "-----BEGIN PGP SIGNED MESSAGE-----":
            break
    else:
        return ""
    # Armor headers (Hash: ...) end at the first empty line.
    for line in lines:
        if not line.strip():
            break
    body = []
    for line in lines:
        if line.strip() == "-----BEGIN PGP SIGNATURE-----":
            return "\n".join(body) + "\n"
        body.append(line[2:] if line.startswith("- ") else line)
    return ""


def file_sha512(path: Path) -> str:
    digest = hashlib.sha512()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


# ==============================================================================
# HTTP client
# ==============================================================================


class ReleaseClient:
    """HTTP client for Gentoo mirror metadata and release files."""

    def __init__(self, timeout_seconds: int = 60, download_timeout_seconds: int = 3600):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.download_timeout = aiohttp.ClientTimeout(total=download_timeout_seconds)

    async def fetch_text(self, url: str) -> str:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise ReleaseError(f"GET {url} returned {resp.status}", url)
                    return await resp.text()
            except aiohttp.ClientError as e:
                log.error(f"Network error fetching {url}: {e}")
                raise ReleaseError(f"Network error: {e}", url) from e

    async def detect_country(self, url: str = IP2C_URL) -> Optional[str]:
        try:
            country = parse_country(await self.fetch_text(url))
        except ReleaseError as e:
            log.warning(f"Country lookup failed: {e}")
            return None
        log.info(f"Detected country: {country or 'unknown'}")
        return country

    async def fetch_mirrors(self, country: Optional[str], url: str = MIRRORS_URL) -> list[str]:
        mirrors = parse_mirrors(await self.fetch_text(url), country)
        log.info(f"{len(mirrors)} mirrors for {country or 'all countries'}")
        return mirrors

    async def fetch_stage3_list(self, mirror: str, arch: str) -> list[Stage3Release]:
        url = _join(mirror, "releases", arch, "autobuilds", LATEST_STAGE3)
        releases = parse_stage3_list(await self.fetch_text(url), mirror, arch)
        if not releases:
            raise ReleaseError(f"No stage3 listed in {url}", url)
        return releases

    async def download(self, url: str, dest: Path) -> Path:
        """Stream ``url`` into ``dest``; an existing non-empty file is reused."""
        dest = Path(dest)
        if dest.exists() and dest.stat().st_size > 0:
            log.info(f"Reusing {dest}")
            return dest
        partial = dest.with_name(dest.name + ".part")
        progress = ThrottledLogger(log)
        async with aiohttp.ClientSession(timeout=self.download_timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise ReleaseError(f"Download of {url} returned {resp.status}", url)
                    total = resp.content_length or 0
                    received = 0
                    with open(partial, "wb") as f:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            f.write(chunk)
                            received += len(chunk)
                            if total:
                                progress.info(
                                    url, f"Downloading {dest.name}: {received * 100 // total}%"
                                )
            except aiohttp.ClientError as e:
                partial.unlink(missing_ok=True)
                raise ReleaseError(f"Download failed: {e}", url) from e
        os.replace(partial, dest)
        log.info(f"Downloaded {dest} ({received} bytes)")
        return dest

    async def download_release(self, release: Stage3Release, directory: Path) -> tuple[Path, Path, Path]:
        """Tarball, DIGESTS and detached signature of a release."""
        directory = Path(directory)
        tarball = await self.download(release.url, directory / release.filename)
        digests = await self.download(release.digests_url, directory / f"{release.filename}.DIGESTS")
        signature = await self.download(release.signature_url, directory / f"{release.filename}.asc")
        return tarball, digests, signature


# ==============================================================================
# Verification
# ==============================================================================


def verify_release(
    tarball: Path,
    digests: Path,
    signature: Path,
    keyserver: str,
    release_key: str,
) -> str:
    """Check the release's signatures and SHA512.

    Returns:
        The verified SHA512 hex digest

    Raises:
        IntegrityError: If the key cannot be fetched, a signature is bad,
            or the checksum does not match
    """
    tarball, digests, signature = Path(tarball), Path(digests), Path(signature)
    try:
        run_command(["gpg", "--keyserver", keyserver, "--recv-keys", release_key])
    except CommandError as e:
        raise IntegrityError(str(tarball), f"cannot fetch release key {release_key}: {e.stderr}") from e

    for args, what in (
        ([str(digests)], digests.name),
        ([str(signature), str(tarball)], signature.name),
    ):
        try:
            run_command(["gpg", "--verify", *args])
        except CommandError as e:
            raise IntegrityError(str(tarball), f"bad signature on {what}: {e.stderr}") from e
        log.info(f"Good signature: {what}")

    expected = parse_digests(clearsigned_text(digests.read_text(encoding="utf-8")), tarball.name)
    if expected is None:
        raise IntegrityError(str(tarball), f"no SHA512 for {tarball.name} in {digests.name}")
    actual = file_sha512(tarball)
    if actual != expected:
        raise IntegrityError(str(tarball), f"SHA512 mismatch (expected {expected}, got {actual})")
    log.info(f"SHA512 verified for {tarball.name}")
    return actual


# ==============================================================================
# Synchronous entry points
# ==============================================================================


def detect_country() -> Optional[str]:
    return asyncio.run(ReleaseClient().detect_country())


def fetch_mirrors(country: Optional[str]) -> list[str]:
    return asyncio.run(ReleaseClient().fetch_mirrors(country))


def fetch_stage3_list(mirror: str, arch: str) -> list[Stage3Release]:
    return asyncio.run(ReleaseClient().fetch_stage3_list(mirror, arch))


def download_release(release: Stage3Release, directory: Path) -> tuple[Path, Path, Path]:
    return asyncio.run(ReleaseClient().download_release(release, directory))
