#!/usr/bin/env python3
"""
GitHub Actions Runner Installer

Downloads the GitHub Actions runner release archive, verifies it against the
SHA-256 checksum published in the release notes and unpacks it into the
current working directory. Used at image build time (Dockerfile or CNB
buildpack) before the runner is registered by runner.py.

ALGORITHM:
==========

1. VALIDATION (no network access):
   - Both <version> and <arch> must be provided
   - <version> must be 'latest' or a dot-separated number (e.g. 2.320.1)
   - <arch> must be one of the supported architectures (x64, arm64)

2. RESOLVE:
   - 'latest' -> GET /repos/actions/runner/releases/latest
   - X.Y.Z    -> GET /repos/actions/runner/releases/tags/vX.Y.Z
   - Read tag_name, body (release notes) and assets from the response
   - Select asset actions-runner-linux-<arch>-<version>.tar.gz by exact name

3. DOWNLOAD:
   - Stream the asset into <dest>/<asset name>

4. VERIFY:
   - Extract expected SHA-256 from the release notes, e.g.
       - actions-runner-linux-x64-2.320.1.tar.gz <!-- BEGIN SHA linux-x64 -->93ac...<!-- END SHA linux-x64 -->
     (or from a sha256sum-style file given with --sha256-file)
   - Compute SHA-256 of the downloaded file and compare (case-insensitive)
   - On mismatch the archive is deleted and never extracted

5. EXTRACT:
   - Unpack the archive into <dest> keeping file modes and layout
   - Delete the archive

Every failure is terminal and reported with a dedicated exit code
(see InstallExitCode). Retries, if wanted, are done by re-running the script.

USAGE:
======
  ./install_runner.py latest x64
  ./install_runner.py 2.320.1 arm64 --dest /app/actions-runner

ENVIRONMENT VARIABLES:
======================
  GITHUB_API_URL           - GitHub API base URL (default: https://api.github.com)
  RUNNER_RELEASES_REPO     - Repository publishing the runner (default: actions/runner)
  GITHUB_TOKEN             - Optional token for API calls (raises rate limits)
  RUNNER_HTTP_TIMEOUT      - Socket timeout in seconds for HTTP calls (default: 30)
  RUNNER_SUPPORTED_ARCHS   - Comma-separated architectures accepted (default: x64,arm64)
"""

import argparse
import hashlib
import json
import logging
import os
import platform
import re
import sys
import tarfile
from dataclasses import dataclass, field
from enum import IntEnum
from http.client import HTTPException
from pathlib import Path
from typing import Any, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from packaging.version import Version

__version__ = "1.0.0"

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("runner-install")

LATEST = "latest"
RUNNER_OS = "linux"
VERSION_PATTERN = re.compile(r'[0-9]+(\.[0-9]+)*')
USAGE = "Usage: install_runner.py <version> <arch>"


# --- Constants & Enums ---
class InstallExitCode(IntEnum):
    """Process exit codes, one per failure category."""
    SUCCESS = 0
    UNEXPECTED_ERROR = 1
    MISSING_ARGUMENT = 2
    INVALID_INPUT = 3
    MANIFEST_FETCH_FAILED = 4
    MANIFEST_PARSE_FAILED = 5
    ASSET_NOT_FOUND = 6
    DOWNLOAD_FAILED = 7
    DIGEST_NOT_FOUND = 8
    DIGEST_MISMATCH = 9
    EXTRACT_FAILED = 10


class InstallError(Exception):
    """Base exception for installer errors."""
    exit_code = InstallExitCode.UNEXPECTED_ERROR


class MissingArgumentError(InstallError):
    exit_code = InstallExitCode.MISSING_ARGUMENT


class InvalidInputError(InstallError):
    exit_code = InstallExitCode.INVALID_INPUT


class ManifestFetchError(InstallError):
    exit_code = InstallExitCode.MANIFEST_FETCH_FAILED


class ManifestParseError(InstallError):
    exit_code = InstallExitCode.MANIFEST_PARSE_FAILED


class AssetNotFoundError(InstallError):
    exit_code = InstallExitCode.ASSET_NOT_FOUND


class DownloadError(InstallError):
    exit_code = InstallExitCode.DOWNLOAD_FAILED


class DigestNotFoundError(InstallError):
    exit_code = InstallExitCode.DIGEST_NOT_FOUND


class DigestMismatchError(InstallError):
    exit_code = InstallExitCode.DIGEST_MISMATCH


class ExtractError(InstallError):
    exit_code = InstallExitCode.EXTRACT_FAILED


def _archs_from_env() -> Tuple[str, ...]:
    raw = os.getenv("RUNNER_SUPPORTED_ARCHS", "x64,arm64")
    return tuple(a.strip() for a in raw.split(',') if a.strip())


# --- Data Model ---
@dataclass(frozen=True)
class PlatformTarget:
    """OS/architecture pair the runner package is built for."""
    arch: str
    os: str = RUNNER_OS

    def asset_name(self, version: str) -> str:
        return f"actions-runner-{self.os}-{self.arch}-{version}.tar.gz"


@dataclass(frozen=True)
class Asset:
    name: str
    download_url: str


@dataclass
class ReleaseManifest:
    """The parts of a GitHub release the installer relies on."""
    tag_name: str
    body: str
    assets: List[Asset] = field(default_factory=list)

    @property
    def version(self) -> str:
        return self.tag_name[1:] if self.tag_name.startswith("v") else self.tag_name

    def find_asset(self, name: str) -> Optional[Asset]:
        for asset in self.assets:
            if asset.name == name:
                return asset
        return None

    @classmethod
    def from_json(cls, data: Any) -> "ReleaseManifest":
        """Builds a manifest from a GitHub release API document."""
        if not isinstance(data, dict):
            raise ManifestParseError("Invalid API response: release document is not an object.")

        tag_name = data.get("tag_name")
        if not isinstance(tag_name, str) or not tag_name:
            raise ManifestParseError("Invalid API response: missing 'tag_name'.")

        # GitHub returns null for releases without notes
        body = data.get("body") or ""
        if not isinstance(body, str):
            raise ManifestParseError("Invalid API response: 'body' is not a string.")

        raw_assets = data.get("assets")
        if not isinstance(raw_assets, list):
            raise ManifestParseError("Invalid API response: missing 'assets' list.")

        assets: List[Asset] = []
        for entry in raw_assets:
            try:
                name = entry["name"]
                url = entry["browser_download_url"]
            except (KeyError, TypeError) as e:
                raise ManifestParseError(f"Invalid asset descriptor in release {tag_name}: {e}")
            if not isinstance(name, str) or not isinstance(url, str):
                raise ManifestParseError(f"Invalid asset descriptor in release {tag_name}.")
            assets.append(Asset(name=name, download_url=url))

        return cls(tag_name=tag_name, body=body, assets=assets)


@dataclass
class DownloadedArtifact:
    """Local copy of a release asset, removed after extraction or failed verification."""
    path: Path
    CHUNK_SIZE = 64 * 1024

    def compute_sha256(self) -> str:
        sha256 = hashlib.sha256()
        with self.path.open('rb') as fp:
            for chunk in iter(lambda: fp.read(self.CHUNK_SIZE), b''):
                sha256.update(chunk)
        return sha256.hexdigest()

    def discard(self):
        self.path.unlink(missing_ok=True)
        logger.info(f"Cleaned up downloaded file {self.path.name}.")


# --- Configuration ---
@dataclass
class Config:
    """
    Invocation parameters plus environment-derived settings.
    """
    version: Optional[str] = None
    arch: Optional[str] = None
    dest_dir: Path = field(default_factory=Path.cwd)
    sha256_file: Optional[Path] = None

    api_url: str = field(default_factory=lambda: os.getenv("GITHUB_API_URL", "https://api.github.com"))
    releases_repo: str = field(default_factory=lambda: os.getenv("RUNNER_RELEASES_REPO", "actions/runner"))
    github_token: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_TOKEN"))
    http_timeout: float = field(default_factory=lambda: float(os.getenv("RUNNER_HTTP_TIMEOUT", "30")))
    supported_archs: Tuple[str, ...] = field(default_factory=_archs_from_env)

    @property
    def platform(self) -> PlatformTarget:
        return PlatformTarget(arch=str(self.arch))

    def validate(self):
        """Checks presence first, then format. Never touches the network."""
        if not self.version:
            raise MissingArgumentError(f"Please provide a version (e.g. 'latest' or '2.320.1'). {USAGE}")

        archs = "' or '".join(self.supported_archs)
        if not self.arch:
            raise MissingArgumentError(f"Please provide the runner architecture ('{archs}'). {USAGE}")

        if self.version != LATEST and not VERSION_PATTERN.fullmatch(self.version):
            raise InvalidInputError(
                f"Invalid version '{self.version}'. "
                "Version must be 'latest' or a dot-separated number (e.g. 2.320.1)"
            )

        if self.arch not in self.supported_archs:
            raise InvalidInputError(f"Invalid architecture '{self.arch}'. Architecture must be '{archs}'")


# --- Digest extraction strategies ---
class DigestExtractor:
    """
    Looks up the trusted SHA-256 digest of a named asset.
    Returns None when no entry exists for the asset.
    """

    def extract_digest(self, notes: str, asset_name: str) -> Optional[str]:
        raise NotImplementedError


class ReleaseNotesDigestExtractor(DigestExtractor):
    """
    Reads the checksum block of actions/runner release notes:

      - actions-runner-linux-x64-2.320.1.tar.gz <!-- BEGIN SHA linux-x64 -->93ac...<!-- END SHA linux-x64 -->

    The asset name and both markers must be on the same line.
    """
    MARKER_PATTERN = re.compile(
        r'<!--\s*BEGIN SHA[^>]*-->\s*([0-9a-fA-F]+)\s*<!--\s*END SHA',
        re.IGNORECASE
    )

    def extract_digest(self, notes: str, asset_name: str) -> Optional[str]:
        # Whole-token match so "x.tar.gz" does not hit "x.tar.gz.sig"
        name_pattern = re.compile(r'(?<![\w.-])' + re.escape(asset_name) + r'(?![\w.-])')

        for line in notes.splitlines():
            if not name_pattern.search(line):
                continue
            if match := self.MARKER_PATTERN.search(line):
                return match.group(1).lower()
        return None


class ChecksumFileDigestExtractor(DigestExtractor):
    """
    Reads a sha256sum-style sidecar file ("<hex>  <name>" or "<hex> *<name>").
    The release notes are ignored.
    """
    LINE_PATTERN = re.compile(r'^([0-9a-fA-F]+)\s+\*?(\S+)\s*$')

    def __init__(self, path: Path):
        self.path = Path(path)

    def extract_digest(self, notes: str, asset_name: str) -> Optional[str]:
        try:
            content = self.path.read_text()
        except OSError as e:
            raise DigestNotFoundError(f"Could not read checksum file {self.path}: {e}")

        for line in content.splitlines():
            match = self.LINE_PATTERN.match(line.strip())
            if match and match.group(2) == asset_name:
                return match.group(1).lower()
        return None


# --- Components ---
class ReleaseClient:
    """
    Talks to the GitHub Releases API and downloads assets.
    No retries: every failure is final for this invocation.
    """
    CHUNK_SIZE = 64 * 1024

    def __init__(self, config: Config):
        self.config = config

    def manifest_url(self, selector: str) -> str:
        base = f"{self.config.api_url.rstrip('/')}/repos/{self.config.releases_repo}/releases"
        if selector == LATEST:
            return f"{base}/latest"
        return f"{base}/tags/v{selector}"

    def _build_request(self, url: str, accept: str, with_auth: bool = True) -> Request:
        req = Request(url, method="GET")
        req.add_header("Accept", accept)
        req.add_header("X-GitHub-Api-Version", "2022-11-28")

        user_agent = f"RunnerInstaller/{__version__} (Python {platform.python_version()}; {platform.system()})"
        req.add_header("User-Agent", user_agent)

        # Never forwarded to download hosts: urllib keeps headers across redirects
        if with_auth and self.config.github_token:
            req.add_header("Authorization", f"Bearer {self.config.github_token}")
        return req

    def fetch_manifest(self, selector: str) -> ReleaseManifest:
        url = self.manifest_url(selector)
        logger.info(f"Fetching release information from {url}...")

        try:
            req = self._build_request(url, "application/vnd.github+json")
            with urlopen(req, timeout=self.config.http_timeout) as resp:
                payload = resp.read()
        except HTTPError as e:
            if e.code == 404:
                raise ManifestFetchError(f"Release not found at {url} (404). Check the requested version.")
            raise ManifestFetchError(f"GitHub API Error: {e.code} {e.reason}")
        except (URLError, OSError, HTTPException, ValueError) as e:
            raise ManifestFetchError(f"Network error connecting to GitHub: {str(e)}")

        try:
            # strict=False: release notes may carry raw control characters
            data = json.loads(payload, strict=False)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestParseError(f"Invalid API response: {str(e)}")

        return ReleaseManifest.from_json(data)

    def download(self, asset: Asset, dest_dir: Path) -> DownloadedArtifact:
        target = Path(dest_dir) / asset.name
        logger.info(f"Downloading {asset.name}...")

        try:
            req = self._build_request(asset.download_url, "application/octet-stream", with_auth=False)
            with urlopen(req, timeout=self.config.http_timeout) as resp, target.open('wb') as fp:
                for chunk in iter(lambda: resp.read(self.CHUNK_SIZE), b''):
                    fp.write(chunk)
        except HTTPError as e:
            target.unlink(missing_ok=True)
            raise DownloadError(f"Download of {asset.name} failed: {e.code} {e.reason}")
        except (URLError, OSError, HTTPException, ValueError) as e:
            target.unlink(missing_ok=True)
            raise DownloadError(f"Download of {asset.name} failed: {str(e)}")

        logger.debug(f"Saved {target} ({target.stat().st_size} bytes)")
        return DownloadedArtifact(path=target)


class ArtifactInstaller:
    """
    Orchestrates resolve -> download -> verify -> extract.
    Each step gates the next; extraction only happens after a digest match.
    """

    def __init__(self, config: Config, client: Optional[ReleaseClient] = None,
                 extractor: Optional[DigestExtractor] = None):
        self.config = config
        self.client = client or ReleaseClient(config)
        if extractor is None:
            if config.sha256_file:
                extractor = ChecksumFileDigestExtractor(config.sha256_file)
            else:
                extractor = ReleaseNotesDigestExtractor()
        self.extractor = extractor

    def _resolved_version(self, manifest: ReleaseManifest) -> str:
        version = manifest.version
        if not VERSION_PATTERN.fullmatch(version):
            raise ManifestParseError(f"Release tag '{manifest.tag_name}' is not a dot-separated version.")

        if self.config.version != LATEST and Version(version) != Version(self.config.version):
            raise ManifestParseError(
                f"Release tag '{manifest.tag_name}' does not match requested version {self.config.version}."
            )
        return version

    def resolve(self) -> Tuple[ReleaseManifest, Asset]:
        manifest = self.client.fetch_manifest(self.config.version)

        version = self._resolved_version(manifest)
        logger.info(f"Resolved version: {version}")

        asset_name = self.config.platform.asset_name(version)
        asset = manifest.find_asset(asset_name)
        if asset is None:
            raise AssetNotFoundError(f"Could not find asset {asset_name} in release {manifest.tag_name}.")

        logger.info(f"Asset URL: {asset.download_url}")
        return manifest, asset

    def verify(self, notes: str, asset_name: str, artifact: DownloadedArtifact) -> str:
        """Returns the verified digest. Discards the artifact on any failure."""
        expected = self.extractor.extract_digest(notes, asset_name)
        if not expected:
            artifact.discard()
            raise DigestNotFoundError(f"Could not find SHA256 for {asset_name} in release notes.")
        logger.info(f"Expected SHA256: {expected}")

        computed = artifact.compute_sha256()
        logger.info(f"Computed SHA256: {computed}")

        if computed.lower() != expected.lower():
            artifact.discard()
            raise DigestMismatchError(
                f"Verification failed: computed SHA256 does NOT match the release notes.\n"
                f"Computed: {computed}\nExpected: {expected}"
            )

        logger.info("Verification successful: computed SHA256 matches the release notes.")
        return computed

    def extract(self, artifact: DownloadedArtifact) -> List[str]:
        """Unpacks into dest_dir and removes the archive. Returns member names."""
        dest = Path(self.config.dest_dir)
        logger.info(f"Extracting {artifact.path.name} into {dest}...")

        try:
            with tarfile.open(artifact.path, 'r:gz') as tar:
                # 'tar' filter keeps modes, drops setuid/setgid, rejects paths outside dest.
                # Every member is checked before the first one is written.
                checked = [tarfile.tar_filter(member, str(dest)) for member in tar.getmembers()]
                members = [member.name for member in checked]
                tar.extractall(path=dest, members=checked, filter='tar')
        except (tarfile.TarError, OSError) as e:
            raise ExtractError(f"Failed to extract {artifact.path.name}: {e}")
        finally:
            artifact.discard()

        logger.info(f"Extracted {len(members)} entries.")
        return members

    def install(self) -> List[str]:
        self.config.validate()

        manifest, asset = self.resolve()
        Path(self.config.dest_dir).mkdir(parents=True, exist_ok=True)
        artifact = self.client.download(asset, self.config.dest_dir)
        self.verify(manifest.body, asset.name, artifact)
        return self.extract(artifact)


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Download, verify and unpack the GitHub Actions runner")
    parser.add_argument("version", nargs="?", help="'latest' or a dot-separated number (e.g. 2.320.1)")
    parser.add_argument("arch", nargs="?", help="Runner architecture (e.g. x64, arm64)")
    parser.add_argument("--dest", type=Path, help="Directory to install into (default: current directory)")
    parser.add_argument("--sha256-file", type=Path,
                        help="Read the expected checksum from a sha256sum-style file instead of the release notes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = Config(version=args.version, arch=args.arch, sha256_file=args.sha256_file)
        if args.dest:
            config.dest_dir = args.dest

        ArtifactInstaller(config).install()
        logger.info("GitHub Actions runner installed.")
    except InstallError as e:
        logger.error(str(e))
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        sys.exit(130)
    except Exception:
        logger.exception("Unexpected error occurred.")
        sys.exit(InstallExitCode.UNEXPECTED_ERROR)

if __name__ == "__main__":
    main()
