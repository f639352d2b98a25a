import collections.abc
import dataclasses
import enum
import json

import dacite

import regmigrate.util

OCI_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.oci.image.manifest.v1+json'
OCI_IMAGE_INDEX_MIME = 'application/vnd.oci.image.index.v1+json'

DOCKER_MANIFEST_LIST_MIME = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.docker.distribution.manifest.v2+json'
DOCKER_MANIFEST_SCHEMA_V1_MIME = 'application/vnd.docker.distribution.manifest.v1+json'
DOCKER_MANIFEST_SCHEMA_V1_SIGNED_MIME = 'application/vnd.docker.distribution.manifest.v1+prettyjws'


class MimeTypes:
    '''
    predefined, well-known mimetypes, handy to be used as `Accept` header when retrieving
    manifests.

    single_image: any single-image manifest (preferring OCI's, then docker's mimetype; legacy
    schema-version-1 manifests are accepted as a last resort)
    multiarch: image-index / manifest-list (not supported for migration)
    '''
    single_image = ', '.join((
        OCI_MANIFEST_SCHEMA_V2_MIME,
        DOCKER_MANIFEST_SCHEMA_V2_MIME,
        DOCKER_MANIFEST_SCHEMA_V1_SIGNED_MIME,
        DOCKER_MANIFEST_SCHEMA_V1_MIME,
    ))
    multiarch = ', '.join((OCI_IMAGE_INDEX_MIME, DOCKER_MANIFEST_LIST_MIME))


class MigrationError(Exception):
    '''
    base class for all errors that abort a migration. All of them are terminal (there are no
    retries); re-running a migration is safe, as already-present blobs are not copied again.
    '''
    kind = 'MigrationError'


class ConfigError(MigrationError):
    kind = 'ConfigError'


class AuthError(MigrationError):
    kind = 'AuthError'


class ConnectError(MigrationError):
    kind = 'ConnectError'


class FetchError(MigrationError):
    kind = 'FetchError'


class CheckError(MigrationError):
    kind = 'CheckError'


class DownloadError(MigrationError):
    kind = 'DownloadError'


class UploadError(MigrationError):
    kind = 'UploadError'


class PublishError(MigrationError):
    kind = 'PublishError'


@dataclasses.dataclass(frozen=True)
class RegistryEndpoint:
    base_url: str
    username: str = ''
    password: str = ''

    def __post_init__(self):
        # frozen -> bypass __setattr__
        object.__setattr__(
            self,
            'base_url',
            regmigrate.util.normalise_registry_url(self.base_url),
        )

    @property
    def anonymous(self) -> bool:
        return not self.username and not self.password

    def __repr__(self) -> str:
        # never leak passwords into logs
        return f'RegistryEndpoint(base_url={self.base_url!r}, username={self.username!r})'


@dataclasses.dataclass(frozen=True)
class RepositoryReference:
    endpoint: RegistryEndpoint
    repository: str
    tag: str

    def validate(self):
        if not self.repository:
            raise ConfigError(f'repository name must not be empty ({self.endpoint.base_url})')
        if not self.tag:
            raise ConfigError(f'tag must not be empty ({self.endpoint.base_url})')

    def __str__(self) -> str:
        return f'{self.endpoint.base_url}/{self.repository}:{self.tag}'


@dataclasses.dataclass(frozen=True)
class MigrationTarget:
    '''
    one side (source or destination) of a migration, as passed by the user: a registry-url (or
    managed-identity), a repository name, and a tag
    '''
    registry_url: str | None = None
    repository: str | None = None
    tag: str | None = None

    def validate(self, side: str='source'):
        if not self.registry_url:
            raise ConfigError(f'a {side} registry-url is required')
        if not self.repository:
            raise ConfigError(f'a {side} repository name is required')
        if not self.tag:
            raise ConfigError(f'a {side} tag is required')


@dataclasses.dataclass(frozen=True, kw_only=True)
class LayerDescriptor:
    digest: str
    mediaType: str | None = None
    size: int | None = None


@dataclasses.dataclass
class _BlobRefV1:
    blobSum: str


@dataclasses.dataclass
class _ManifestV1:
    '''
    replication-relevant parts of the (deprecated) manifest-schema version 1
    '''
    fsLayers: list[_BlobRefV1]
    schemaVersion: int = 1


@dataclasses.dataclass
class _ManifestV2:
    config: LayerDescriptor
    layers: list[LayerDescriptor]
    schemaVersion: int = 2
    mediaType: str | None = None


@dataclasses.dataclass(frozen=True)
class Manifest:
    '''
    a single-image manifest as retrieved from a registry.

    `raw` holds the unaltered bytes, which are published verbatim (the parsed attributes are
    only used to determine the blobs to be migrated).
    '''
    raw: bytes
    media_type: str
    layers: tuple[LayerDescriptor, ...]
    config: LayerDescriptor | None = None

    def blobs(self) -> collections.abc.Generator[LayerDescriptor, None, None]:
        '''
        yields all blobs referenced by this manifest in the order they are to be migrated
        (config-blob first, if present, followed by layers in manifest-order)
        '''
        if self.config:
            yield self.config
        yield from self.layers

    @staticmethod
    def parse(
        raw: bytes,
        content_type: str | None=None,
    ) -> 'Manifest':
        try:
            manifest_dict = json.loads(raw)
        except ValueError as ve:
            raise FetchError(f'manifest is not valid json: {ve}') from ve

        if not isinstance(manifest_dict, dict):
            raise FetchError(f'unexpected manifest: {manifest_dict=}')

        if content_type:
            content_type = content_type.split(';')[0].strip()

        media_type = manifest_dict.get('mediaType')

        if media_type in (DOCKER_MANIFEST_LIST_MIME, OCI_IMAGE_INDEX_MIME) \
            or content_type in (DOCKER_MANIFEST_LIST_MIME, OCI_IMAGE_INDEX_MIME) \
            or 'manifests' in manifest_dict:
            raise FetchError(
                f'multi-arch manifests are not supported: {media_type or content_type=}'
            )

        try:
            schema_version = int(manifest_dict.get('schemaVersion', 2))
        except (TypeError, ValueError) as e:
            raise FetchError(f'invalid schemaVersion in manifest: {e}') from e

        try:
            if schema_version == 1:
                parsed = dacite.from_dict(
                    data_class=_ManifestV1,
                    data=manifest_dict,
                )
                layers = tuple(
                    LayerDescriptor(digest=fs_layer.blobSum)
                    for fs_layer in parsed.fsLayers
                )
                config = None
                if 'signatures' in manifest_dict:
                    default_media_type = DOCKER_MANIFEST_SCHEMA_V1_SIGNED_MIME
                else:
                    default_media_type = DOCKER_MANIFEST_SCHEMA_V1_MIME
            elif schema_version == 2:
                parsed = dacite.from_dict(
                    data_class=_ManifestV2,
                    data=manifest_dict,
                )
                layers = tuple(parsed.layers)
                config = parsed.config
                default_media_type = OCI_MANIFEST_SCHEMA_V2_MIME
            else:
                raise FetchError(f'unsupported manifest {schema_version=}')
        except dacite.DaciteError as de:
            raise FetchError(f'malformed manifest: {de}') from de

        if not media_type:
            # generic content-types are not helpful when re-publishing
            if content_type and content_type.startswith('application/vnd.'):
                media_type = content_type
            else:
                media_type = default_media_type

        return Manifest(
            raw=raw,
            media_type=media_type,
            layers=layers,
            config=config,
        )


class MigrationStatus(enum.Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclasses.dataclass(frozen=True)
class MigrationResult:
    status: MigrationStatus
    error: MigrationError | None = None

    @property
    def ok(self) -> bool:
        return self.status is MigrationStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        return 1
