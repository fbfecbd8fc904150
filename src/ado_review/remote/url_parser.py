"""Remote URL parsing and organization URL normalization."""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse, urlunparse

from .exceptions import URLValidationError

logger = logging.getLogger(__name__)

_AZURE_HOST = "dev.azure.com"
_AZURE_SSH_HOST = "ssh.dev.azure.com"
_LEGACY_SUFFIX = ".visualstudio.com"

# https://[user@]{org}.visualstudio.com[/DefaultCollection]/{project}/_git/{repo}
_VISUALSTUDIO_PATTERN = re.compile(
    r"^https?://(?:[^@/]+@)?([^./]+)\.visualstudio\.com/"
    r"(?:DefaultCollection/)?([^/]+)/_git/([^/]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)

# https://[user@]{server}/{organization}/{project}/_git/{repo}
# Covers dev.azure.com and on-premise servers (organization = collection).
_HTTPS_PATTERN = re.compile(
    r"^(https?)://(?:[^@/]+@)?([^/]+)/([^/]+)/([^/]+)/_git/([^/]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)

# git@ssh.dev.azure.com:v3/{organization}/{project}/{repo}
_SSH_V3_PATTERN = re.compile(
    r"^(?:ssh://)?git@ssh\.([^:/]+)[:/]v3/([^/]+)/([^/]+)/([^/]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)

# {org}@vs-ssh.visualstudio.com:v3/{organization}/{project}/{repo}
_SSH_LEGACY_PATTERN = re.compile(
    r"^(?:ssh://)?[^@]+@vs-ssh\.visualstudio\.com[:/]v3/([^/]+)/([^/]+)/([^/]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RepositoryIdentity:
    """Organization/project/repository triple parsed from a git remote URL.

    Only ever used as a lookup key; ``server_url`` is the organization's
    REST root (``https://dev.azure.com/{org}``, ``https://{org}.visualstudio.com``
    or ``https://{server}/{collection}``).
    """

    organization: str
    project: str
    repository: str
    server_url: str
    remote_url: str = ""

    @property
    def organization_key(self) -> str:
        return canonical_organization_key(self.server_url)

    @property
    def api_base_url(self) -> str:
        return self.server_url

    def __str__(self) -> str:
        return f"{self.organization}/{self.project}/{self.repository}"


def parse_remote_url(url: str) -> RepositoryIdentity:
    """Parse a git remote URL into a ``RepositoryIdentity``.

    Supports HTTPS (dev.azure.com, legacy visualstudio.com, on-premise),
    SSH v3 and legacy vs-ssh remotes. Path components are URL-decoded.

    Raises:
        URLValidationError: If the URL is not a recognised remote form
    """
    if not url or not url.strip():
        raise URLValidationError("Remote URL cannot be empty")
    url = url.strip()

    match = _VISUALSTUDIO_PATTERN.match(url)
    if match:
        organization = _decode(match.group(1))
        return RepositoryIdentity(
            organization=organization,
            project=_decode(match.group(2)),
            repository=_decode(match.group(3)),
            server_url=f"https://{organization.lower()}{_LEGACY_SUFFIX}",
            remote_url=url,
        )

    match = _HTTPS_PATTERN.match(url)
    if match:
        scheme, server, organization = match.group(1), match.group(2), match.group(3)
        organization = _decode(organization)
        return RepositoryIdentity(
            organization=organization,
            project=_decode(match.group(4)),
            repository=_decode(match.group(5)),
            server_url=f"{scheme.lower()}://{server.lower()}/{organization}",
            remote_url=url,
        )

    match = _SSH_V3_PATTERN.match(url)
    if match:
        # ssh.dev.azure.com -> dev.azure.com
        server = match.group(1).lower()
        organization = _decode(match.group(2))
        return RepositoryIdentity(
            organization=organization,
            project=_decode(match.group(3)),
            repository=_decode(match.group(4)),
            server_url=f"https://{server}/{organization}",
            remote_url=url,
        )

    match = _SSH_LEGACY_PATTERN.match(url)
    if match:
        organization = _decode(match.group(1))
        return RepositoryIdentity(
            organization=organization,
            project=_decode(match.group(2)),
            repository=_decode(match.group(3)),
            server_url=f"https://{organization.lower()}{_LEGACY_SUFFIX}",
            remote_url=url,
        )

    raise URLValidationError(f"Not a recognised repository remote URL: {url}")


def canonical_organization_key(organization_url: str) -> str:
    """Collapse equivalent organization URL forms into one lookup key.

    ``https://dev.azure.com/Contoso/``, ``contoso.visualstudio.com`` and
    ``git@ssh.dev.azure.com:v3/contoso`` all map to ``contoso``; on-premise
    servers map to ``host/collection``.

    Raises:
        URLValidationError: If no organization can be derived
    """
    if not organization_url or not organization_url.strip():
        raise URLValidationError("Organization URL cannot be empty")

    text = organization_url.strip()

    # A bare organization name
    if "/" not in text and ":" not in text and "." not in text:
        return unquote(text).lower()

    ssh_match = re.match(r"^(?:ssh://)?[^@/]+@([^:/]+)[:/](?:v3/)?(.*)$", text)
    if ssh_match and "://" not in text.split("@", 1)[0]:
        host = ssh_match.group(1).lower()
        path = ssh_match.group(2)
        if host.startswith("vs-ssh.") or host == _AZURE_SSH_HOST:
            host = _AZURE_HOST
    else:
        if "://" not in text:
            text = f"https://{text}"
        parsed = urlparse(text)
        host = (parsed.hostname or "").lower()
        path = parsed.path

    segments = [unquote(s) for s in path.split("/") if s]

    if not host:
        raise URLValidationError(f"Invalid organization URL: {organization_url}")

    if host in (_AZURE_HOST, _AZURE_SSH_HOST):
        if not segments:
            raise URLValidationError(
                f"Organization missing from URL: {organization_url}"
            )
        return segments[0].lower()

    if host.endswith(_LEGACY_SUFFIX):
        return host[: -len(_LEGACY_SUFFIX)]

    if segments:
        return f"{host}/{segments[0].lower()}"
    return host


def validate_and_normalize_organization_url(organization_url: Optional[str]) -> str:
    """Validate and normalize an organization URL.

    Adds ``https://`` when no scheme is given, rejects non-HTTP schemes and
    strips trailing slashes.

    Raises:
        URLValidationError: If the URL is invalid or unsupported
    """
    if not organization_url:
        raise URLValidationError("Organization URL cannot be empty or None")

    organization_url = organization_url.strip()
    if not organization_url:
        raise URLValidationError("Organization URL cannot be empty")

    initial_parsed = urlparse(organization_url)

    # urlparse treats "domain:port" as "scheme:path"
    if not initial_parsed.scheme or (
        initial_parsed.scheme and not initial_parsed.netloc and ":" in organization_url
    ):
        organization_url = f"https://{organization_url}"

    parsed = urlparse(organization_url)

    if parsed.scheme not in ("http", "https"):
        raise URLValidationError(
            f"Unsupported protocol '{parsed.scheme}'. Only HTTP and HTTPS are supported"
        )

    if not parsed.netloc or parsed.netloc.startswith("."):
        raise URLValidationError(f"Invalid URL format: {organization_url}")

    host = (parsed.hostname or "").lower()
    if host != "localhost" and "." not in host:
        raise URLValidationError(f"Invalid URL format: {organization_url}")

    path = parsed.path.rstrip("/")
    if host == _AZURE_HOST and not path:
        raise URLValidationError(
            f"Organization missing from URL: {organization_url}"
        )

    return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


def _decode(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        logger.warning(f"Failed to URL decode: {value}")
        return value
