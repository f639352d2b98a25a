import collections.abc
import functools
import logging
import os
import tempfile

import requests

import regmigrate.auth
import regmigrate.client as rc
import regmigrate.model as rm

logger = logging.getLogger(__name__)

# type-alias for typehints
connector = collections.abc.Callable[[str], rc.Client]

STAGING_FILE_PREFIX = 'regmigrate-'
COPY_CHUNK_SIZE = 1024 * 1024 # 1 MiB


def _remove_staging_file(path: str):
    try:
        os.unlink(path)
    except OSError as oe:
        logger.warning(f'failed to remove staging file {path}: {oe}')


def _download_to(
    source: rc.Client,
    src_repo: str,
    digest: str,
    fileobj,
):
    res = source.download_blob(repository=src_repo, digest=digest)
    try:
        for chunk in res.iter_content(chunk_size=COPY_CHUNK_SIZE):
            fileobj.write(chunk)
    finally:
        res.close()

    fileobj.flush()
    os.fsync(fileobj.fileno())


def migrate_layer(
    source: rc.Client,
    destination: rc.Client,
    src_repo: str,
    dest_repo: str,
    layer: rm.LayerDescriptor,
    staging_dir: str | None=None,
):
    '''
    copies the given blob from source to destination, unless destination already holds it.

    The blob is first fully downloaded into a local staging-file, which is then uploaded. The
    staging-file is removed on every exit path. The digest declared in the manifest is trusted
    (i.e. the downloaded content is not verified against it).

    raises CheckError, DownloadError, or UploadError on failure.
    '''
    digest = layer.digest
    logger.info(f'checking whether {digest=} exists in destination repository {dest_repo}')

    try:
        has_blob = destination.blob_exists(repository=dest_repo, digest=digest)
    except requests.exceptions.RequestException as re:
        raise rm.CheckError(
            f'failed to check whether {digest=} exists in {dest_repo=}: {re}'
        ) from re

    if has_blob:
        logger.info(f'skipping blob upload {digest=} - already exists')
        return

    logger.info(f'need to copy {digest=} from {src_repo} to {dest_repo}')

    try:
        staging_file = tempfile.NamedTemporaryFile(
            prefix=STAGING_FILE_PREFIX,
            dir=staging_dir,
            delete=False,
        )
    except OSError as oe:
        raise rm.DownloadError(f'failed to create staging file for {digest=}: {oe}') from oe

    try:
        try:
            with staging_file:
                _download_to(
                    source=source,
                    src_repo=src_repo,
                    digest=digest,
                    fileobj=staging_file,
                )
        except (requests.exceptions.RequestException, OSError) as e:
            raise rm.DownloadError(f'failed to download {digest=} from {src_repo=}: {e}') from e

        try:
            octets_count = os.path.getsize(staging_file.name)
            with open(staging_file.name, 'rb') as f:
                destination.upload_blob(
                    repository=dest_repo,
                    digest=digest,
                    data=f,
                    octets_count=octets_count,
                )
        except (requests.exceptions.RequestException, OSError, ValueError) as e:
            raise rm.UploadError(f'failed to upload {digest=} to {dest_repo=}: {e}') from e

        logger.info(f'copied {digest=} ({octets_count} octets)')
    finally:
        _remove_staging_file(staging_file.name)


def _migrate(
    source: rm.MigrationTarget,
    destination: rm.MigrationTarget,
    connect: connector,
    staging_dir: str | None,
):
    source.validate(side='source')
    destination.validate(side='destination')

    # resolve (and ping) source before touching destination
    src_client = connect(source.registry_url)
    dest_client = connect(destination.registry_url)

    src_ref = rm.RepositoryReference(
        endpoint=src_client.endpoint,
        repository=source.repository,
        tag=source.tag,
    )
    dest_ref = rm.RepositoryReference(
        endpoint=dest_client.endpoint,
        repository=destination.repository,
        tag=destination.tag,
    )
    src_ref.validate()
    dest_ref.validate()

    try:
        manifest = src_client.manifest(
            repository=src_ref.repository,
            tag=src_ref.tag,
        )
    except requests.exceptions.RequestException as re:
        raise rm.FetchError(f'failed to fetch the manifest for {src_ref}: {re}') from re

    blobs = tuple(manifest.blobs())
    logger.info(f'{src_ref} references {len(blobs)} blobs ({manifest.media_type})')

    for idx, blob in enumerate(blobs, 1):
        logger.info(f'migrating blob {idx}/{len(blobs)}: {blob.digest}')
        migrate_layer(
            source=src_client,
            destination=dest_client,
            src_repo=src_ref.repository,
            dest_repo=dest_ref.repository,
            layer=blob,
            staging_dir=staging_dir,
        )

    try:
        dest_client.put_manifest(
            repository=dest_ref.repository,
            tag=dest_ref.tag,
            manifest=manifest,
        )
    except requests.exceptions.RequestException as re:
        raise rm.PublishError(f'failed to upload manifest to {dest_ref}: {re}') from re

    logger.info(f'migrated {src_ref} to {dest_ref}')


def migrate(
    source: rm.MigrationTarget,
    destination: rm.MigrationTarget,
    connect: connector=None,
    staging_dir: str | None=None,
) -> rm.MigrationResult:
    '''
    migrates the image referenced by `source` to `destination`.

    Steps are run strictly in order (resolve credentials and connect to both registries, fetch
    manifest, migrate blobs in manifest-order, publish manifest). The first failure aborts the
    migration; in particular, the manifest is only published after all blobs were migrated.
    Re-running a failed migration is safe (blobs already present at destination are skipped).

    `connect` is called with a registry-url and must return a (connected) client; it defaults to
    `regmigrate.auth.connect` using the default credential-resolution strategies.
    '''
    if not connect:
        # credential store is read once, and shared for both registries
        connect = functools.partial(
            regmigrate.auth.connect,
            strategies=regmigrate.auth.default_strategies(),
        )

    try:
        _migrate(
            source=source,
            destination=destination,
            connect=connect,
            staging_dir=staging_dir,
        )
    except rm.MigrationError as me:
        logger.error(f'migration failed ({me.kind}): {me}')
        return rm.MigrationResult(
            status=rm.MigrationStatus.FAILED,
            error=me,
        )

    return rm.MigrationResult(status=rm.MigrationStatus.SUCCEEDED)
