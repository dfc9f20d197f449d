"""Docker Registry API v2 async pull client."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import aiohttp

from ..exceptions import AnalyzerError, FetchError, ResolutionError
from ..models import (
    ImageConfig,
    ImageDescriptor,
    LayerDescriptor,
    ProgressEvent,
    ProgressKind,
)
from ..utils.digest import DigestVerifier, calculate_digest, validate_digest
from ..utils.reference import ImageReference, parse_reference
from .session import create_session, parse_auth_challenge, parse_json_response
from .types import ProgressSink, RegistryConfig, TrustPolicy

logger = logging.getLogger(__name__)

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"

MANIFEST_ACCEPT = ", ".join([MANIFEST_V2, MANIFEST_LIST_V2, OCI_MANIFEST, OCI_INDEX])
MANIFEST_LIST_TYPES = (MANIFEST_LIST_V2, OCI_INDEX)

GZIP_LAYER_TYPES = (
    "application/vnd.docker.image.rootfs.diff.tar.gzip",
    "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip",
    "application/vnd.oci.image.layer.v1.tar+gzip",
    "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip",
)

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def _emit(
    progress: Optional[ProgressSink],
    kind: ProgressKind,
    layer: LayerDescriptor,
    offset: int = 0,
) -> None:
    if progress is not None:
        progress.emit(
            ProgressEvent(kind=kind, artifact=layer.digest, offset=offset, size=layer.size)
        )


def parse_image_config(config_data: Dict[str, Any]) -> ImageConfig:
    """Parse an image config blob into ImageConfig."""
    runtime_config = config_data.get("config") or {}
    env = runtime_config.get("Env") or []
    return ImageConfig(
        architecture=config_data.get("architecture", ""),
        os=config_data.get("os", ""),
        env=tuple(str(item) for item in env),
    )


def parse_layers(manifest: Dict[str, Any]) -> Tuple[LayerDescriptor, ...]:
    """Build ordered layer descriptors from an image manifest.

    Raises:
        ResolutionError: If a layer is not a gzip tar or has a malformed digest
    """
    layers = []
    for ordinal, entry in enumerate(manifest.get("layers") or []):
        media_type = entry.get("mediaType", GZIP_LAYER_TYPES[0])
        if media_type not in GZIP_LAYER_TYPES:
            raise ResolutionError(f"Unsupported layer media type: {media_type}")
        digest = entry.get("digest", "")
        if not validate_digest(digest):
            raise ResolutionError(f"Invalid layer digest in manifest: {digest!r}")
        layers.append(
            LayerDescriptor(
                digest=digest,
                ordinal=ordinal,
                size=int(entry.get("size", 0)),
                media_type=media_type,
            )
        )
    return tuple(layers)


class RegistryClient:
    """Docker Registry API v2 async client for pulling images.

    One client serves one pull: :meth:`resolve` binds the client to the
    resolved repository, and :meth:`fetch_blob` downloads from it.
    """

    def __init__(
        self,
        config: Optional[RegistryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            config: Registry access settings (credentials, trust policy, ...)
            session: Existing aiohttp session to use instead of creating one
        """
        self.config = config or RegistryConfig()
        self.session = session
        self._owns_session = session is None
        self._auth: Dict[Tuple[str, str], str] = {}
        self._reference: Optional[ImageReference] = None

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = await create_session(self.config)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    def base_url(self, registry: str) -> str:
        scheme = "http" if registry in self.config.insecure_registries else "https"
        return f"{scheme}://{registry}"

    def _credentials(self) -> Optional[aiohttp.BasicAuth]:
        if self.config.username and self.config.password is not None:
            return aiohttp.BasicAuth(self.config.username, self.config.password)
        return None

    async def _authenticate(
        self,
        ref: ImageReference,
        challenge: str,
        error_cls: type[AnalyzerError],
    ) -> str:
        """Answer a 401 challenge and cache the resulting Authorization header."""
        scheme, params = parse_auth_challenge(challenge)
        credentials = self._credentials()

        if scheme == "basic":
            if credentials is None:
                raise error_cls(f"Registry {ref.registry} requires credentials")
            header = credentials.encode()
        elif scheme == "bearer" and "realm" in params:
            query = {"scope": params.get("scope") or f"repository:{ref.repository}:pull"}
            if params.get("service"):
                query["service"] = params["service"]
            try:
                async with self.session.get(
                    params["realm"], params=query, auth=credentials
                ) as resp:
                    if resp.status != 200:
                        raise error_cls(
                            f"Token request to {params['realm']} failed with status {resp.status}"
                        )
                    data = await parse_json_response(resp)
            except (*_TRANSPORT_ERRORS, ValueError) as e:
                raise error_cls(f"Failed to obtain registry token: {e}") from e
            token = data.get("token") or data.get("access_token")
            if not token:
                raise error_cls("Token endpoint returned no token")
            header = f"Bearer {token}"
        else:
            raise error_cls(f"Unsupported authentication challenge: {challenge!r}")

        self._auth[(ref.registry, ref.repository)] = header
        return header

    async def _request(
        self,
        ref: ImageReference,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        error_cls: type[AnalyzerError] = ResolutionError,
    ) -> aiohttp.ClientResponse:
        """GET url, authenticating once on a 401 challenge.

        The caller owns the returned response and must release it.
        """
        if not self.session:
            self.session = await create_session(self.config)

        headers = dict(headers or {})
        key = (ref.registry, ref.repository)
        if key in self._auth:
            headers["Authorization"] = self._auth[key]

        resp = await self.session.get(url, headers=headers)
        if resp.status == 401 and "WWW-Authenticate" in resp.headers:
            challenge = resp.headers["WWW-Authenticate"]
            resp.release()
            headers["Authorization"] = await self._authenticate(ref, challenge, error_cls)
            resp = await self.session.get(url, headers=headers)
        return resp

    async def get_manifest(
        self, ref: ImageReference, reference: str
    ) -> Tuple[Dict[str, Any], str]:
        """Retrieve a manifest and its media type.

        Raises:
            ResolutionError: If retrieval fails
        """
        url = f"{self.base_url(ref.registry)}/v2/{ref.repository}/manifests/{reference}"
        resp = await self._request(ref, url, headers={"Accept": MANIFEST_ACCEPT})
        async with resp:
            if resp.status == 404:
                raise ResolutionError(f"Manifest not found: {ref.repository}:{reference}")
            if resp.status != 200:
                raise ResolutionError(
                    f"Failed to get manifest {ref.repository}:{reference}: HTTP {resp.status}"
                )
            try:
                manifest = await parse_json_response(resp)
            except ValueError as e:
                raise ResolutionError(str(e)) from e
            media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()

        if not isinstance(manifest, dict):
            raise ResolutionError("Manifest is not a JSON object")
        return manifest, manifest.get("mediaType") or media_type

    def select_platform(self, index: Dict[str, Any]) -> str:
        """Pick the manifest digest matching the configured platform.

        Raises:
            ResolutionError: If no entry matches
        """
        wanted_os = self.config.platform_os
        wanted_arch = self.config.platform_architecture
        wanted_variant = self.config.platform_variant
        available = []

        for entry in index.get("manifests") or []:
            platform = entry.get("platform") or {}
            os_name = platform.get("os", "")
            arch = platform.get("architecture", "")
            variant = platform.get("variant")
            available.append("/".join(p for p in (os_name, arch, variant) if p))
            if os_name != wanted_os or arch != wanted_arch:
                continue
            if wanted_variant and variant != wanted_variant:
                continue
            return entry["digest"]

        raise ResolutionError(
            f"No manifest for platform {self.config.platform} "
            f"(available: {', '.join(available) or 'none'})"
        )

    async def get_config_blob(self, ref: ImageReference, digest: str) -> Dict[str, Any]:
        """Retrieve and decode the image config blob.

        Raises:
            ResolutionError: If retrieval, verification or decoding fails
        """
        url = f"{self.base_url(ref.registry)}/v2/{ref.repository}/blobs/{digest}"
        resp = await self._request(ref, url)
        async with resp:
            if resp.status != 200:
                raise ResolutionError(f"Failed to get config blob {digest}: HTTP {resp.status}")
            body = await resp.read()

        if self.config.trust_policy is TrustPolicy.VERIFY_DIGESTS:
            algorithm = digest.split(":", 1)[0]
            if calculate_digest(body, algorithm) != digest:
                raise ResolutionError(f"Config blob digest mismatch for {digest}")
        try:
            config_data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ResolutionError(f"Invalid image config blob {digest}: {e}") from e
        if not isinstance(config_data, dict):
            raise ResolutionError(f"Image config blob {digest} is not a JSON object")
        return config_data

    async def resolve(self, image_ref: str) -> ImageDescriptor:
        """Resolve a reference to its manifest, ordered layers and config.

        Args:
            image_ref: Image reference (e.g., nginx:alpine)

        Returns:
            Resolved image descriptor

        Raises:
            ResolutionError: If the reference is invalid or the image cannot be resolved
        """
        try:
            ref = parse_reference(image_ref)
        except ValueError as e:
            raise ResolutionError(str(e)) from e

        logger.info("Resolving %s", ref, extra={"image": str(ref)})
        try:
            manifest, media_type = await self.get_manifest(ref, ref.identifier)
            if media_type in MANIFEST_LIST_TYPES or "manifests" in manifest:
                digest = self.select_platform(manifest)
                manifest, media_type = await self.get_manifest(ref, digest)

            if manifest.get("schemaVersion") != 2 or "config" not in manifest:
                raise ResolutionError(f"Unsupported manifest format: {media_type or 'unknown'}")

            config_data = await self.get_config_blob(ref, manifest["config"]["digest"])
        except _TRANSPORT_ERRORS as e:
            raise ResolutionError(f"Registry {ref.registry} unreachable: {e}") from e

        layers = parse_layers(manifest)
        self._reference = ref
        logger.info(
            "Resolved %s: %d layers", ref, len(layers), extra={"image": str(ref)}
        )
        return ImageDescriptor(
            manifest=manifest, layers=layers, config=parse_image_config(config_data)
        )

    async def fetch_blob(
        self, layer: LayerDescriptor, progress: Optional[ProgressSink] = None
    ) -> AsyncIterator[bytes]:
        """Stream a layer blob from the resolved repository.

        Args:
            layer: Layer to download
            progress: Optional sink for transfer events

        Yields:
            Chunks of the compressed blob

        Raises:
            FetchError: If the download fails or the digest does not match
        """
        ref = self._reference
        if ref is None:
            raise FetchError("fetch_blob called before resolve")

        verifier = None
        if self.config.trust_policy is TrustPolicy.VERIFY_DIGESTS:
            verifier = DigestVerifier(layer.digest)

        url = f"{self.base_url(ref.registry)}/v2/{ref.repository}/blobs/{layer.digest}"
        offset = 0
        completed = False
        _emit(progress, ProgressKind.NEW_ARTIFACT, layer)
        try:
            resp = await self._request(ref, url, error_cls=FetchError)
            async with resp:
                if resp.status != 200:
                    raise FetchError(f"Failed to fetch blob {layer.digest}: HTTP {resp.status}")
                async for chunk in resp.content.iter_chunked(self.config.chunk_size):
                    if verifier is not None:
                        verifier.update(chunk)
                    offset += len(chunk)
                    _emit(progress, ProgressKind.READING, layer, offset)
                    yield chunk

            if verifier is not None and not verifier.verify():
                raise FetchError(
                    f"Digest mismatch for blob {layer.digest}: got {verifier.digest}"
                )
            completed = True
            _emit(progress, ProgressKind.DONE, layer, offset)
        except _TRANSPORT_ERRORS as e:
            raise FetchError(f"Failed to fetch blob {layer.digest}: {e}") from e
        finally:
            if not completed:
                _emit(progress, ProgressKind.SKIPPED, layer, offset)
