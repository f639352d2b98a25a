'''
credential resolution for registries.

Credentials are resolved by an ordered chain of strategies. Each strategy is a callable accepting
an endpoint-spec (a registry-url, optionally w/ embedded basic-auth credentials, or a
managed-identity, such as `ecr:<registry-id>`), and returning either a resolved
`RegistryEndpoint`, or `None` if it is not applicable. The first applicable strategy wins.
'''
import base64
import collections.abc
import json
import logging
import os
import urllib.parse

import requests

import regmigrate.aws
import regmigrate.client
import regmigrate.model as rm
import regmigrate.util


logger = logging.getLogger(__name__)

MANAGED_IDENTITY_PREFIX = 'ecr:'

# typehint-aliases
endpoint_spec = str
strategy = collections.abc.Callable[[endpoint_spec], rm.RegistryEndpoint | None]


def docker_cfg_candidates() -> tuple[str, ...]:
    candidates = []
    if docker_config_dir := os.environ.get('DOCKER_CONFIG'):
        candidates.append(os.path.join(docker_config_dir, 'config.json'))

    candidates.extend((
        os.path.join(os.environ.get('HOME', ''), '.docker/config.json'),
        '/docker-cfg.json',
    ))

    return tuple(candidates)


def find_docker_cfg() -> str | None:
    for candidate in docker_cfg_candidates():
        if os.path.isfile(candidate):
            return candidate # first existing candidate wins
    return None


class CredentialStore:
    '''
    credentials read from docker's auth-config (`config.json`). By design, docker's auth-config
    only allows configuring credentials per hostname; ports are ignored for matching.

    The auth-config is read exactly once (see `load`).
    '''
    def __init__(
        self,
        auths: dict[str, dict] | None=None,
        path: str | None=None,
    ):
        self.auths = auths or {}
        self.path = path

    @staticmethod
    def load(docker_cfg: str | None=None) -> 'CredentialStore':
        '''
        reads the given docker-cfg (or the first existing default candidate if none is given).

        Failing to read is not considered an error: the returned store will not serve any
        credentials in this case (which might still be useful, as many registries allow anonymous
        read-access).
        '''
        if not docker_cfg:
            docker_cfg = find_docker_cfg()

        if not docker_cfg:
            logger.info('no docker-cfg found - will not lookup credentials from docker-cfg')
            return CredentialStore()

        try:
            with open(docker_cfg) as f:
                docker_auth = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f'failed to read {docker_cfg=}: {e} - ignoring')
            return CredentialStore(path=docker_cfg)

        if not isinstance(docker_auth, dict):
            logger.warning(f'unexpected contents in {docker_cfg=} - ignoring')
            return CredentialStore(path=docker_cfg)

        auths = docker_auth.get('auths', None)
        if not auths or not isinstance(auths, dict):
            # docker-cfg might be empty - do not handle as an error; however, we can never serve
            # anything useful
            logger.info(f'no auths configured in {docker_cfg=}')
            return CredentialStore(path=docker_cfg)

        logger.info(f'read credentials for {len(auths)} registries from {docker_cfg=}')

        return CredentialStore(
            auths=auths,
            path=docker_cfg,
        )

    def credentials(self, registry_url: str) -> tuple[str, str] | None:
        '''
        returns a (username, password) tuple for the host of the given registry-url, or None if
        no (usable) entry exists.
        '''
        try:
            host = regmigrate.util.registry_host(registry_url)
        except ValueError:
            return None

        for netloc, auth_dict in self.auths.items():
            try:
                if regmigrate.util.registry_host(netloc) == host:
                    break
            except ValueError:
                continue
        else:
            return None # no matching cfg was found

        if not isinstance(auth_dict, dict):
            logger.warning(f'ignoring malformed auth-cfg for {host=} in {self.path}')
            return None

        if auth := auth_dict.get('auth', None):
            try:
                auth = base64.b64decode(auth).decode('utf-8')
                username, password = auth.split(':', 1)
            except ValueError as ve:
                logger.warning(f'ignoring malformed auth-cfg for {host=} in {self.path}: {ve}')
                return None
            return username, password

        if (username := auth_dict.get('username')) is not None:
            return username, auth_dict.get('password', '')

        # e.g. entries only referencing a credential-helper
        logger.warning(f'did not find expected attr `auth` in {self.path} for {host=}')
        return None


def _url_with_scheme(spec: str) -> str:
    if not '://' in spec:
        return f'https://{spec}'
    return spec


def managed_identity_strategy(
    token_exchange: collections.abc.Callable[..., regmigrate.aws.EcrAuthorization]=None,
    env: collections.abc.Mapping[str, str] | None=None,
) -> strategy:
    if not token_exchange:
        token_exchange = regmigrate.aws.authorization_token

    def managed_identity(endpoint_spec: str) -> rm.RegistryEndpoint | None:
        if not endpoint_spec.startswith(MANAGED_IDENTITY_PREFIX):
            return None

        identity = endpoint_spec.removeprefix(MANAGED_IDENTITY_PREFIX)

        try:
            registry_id, region_name = regmigrate.aws.parse_managed_identity(identity)
        except ValueError as ve:
            raise rm.AuthError(f'invalid managed identity {identity=}: {ve}') from ve

        if not region_name:
            region_name = regmigrate.aws.default_region(env=env)
        if not region_name:
            raise rm.AuthError(
                f'no region for {registry_id=} - pass `ecr:<registry-id>:<region>`, or set '
                'AWS_REGION'
            )

        try:
            credentials = regmigrate.aws.AccessKeyCredentials.from_env(env=env)
        except ValueError as ve:
            raise rm.AuthError(f'no AWS credentials for {registry_id=}: {ve}') from ve

        try:
            authorization = token_exchange(
                registry_id=registry_id,
                region_name=region_name,
                credentials=credentials,
            )
        except (requests.exceptions.RequestException, KeyError, ValueError) as e:
            raise rm.AuthError(
                f'failed to get ECR authorization token for {registry_id=}: {e}'
            ) from e

        return rm.RegistryEndpoint(
            base_url=authorization.proxy_url,
            username=authorization.username,
            password=authorization.password,
        )

    return managed_identity


def credential_store_strategy(
    credential_store: CredentialStore,
) -> strategy:
    def credential_store_lookup(endpoint_spec: str) -> rm.RegistryEndpoint | None:
        if not (credentials := credential_store.credentials(endpoint_spec)):
            return None

        username, password = credentials

        return rm.RegistryEndpoint(
            base_url=endpoint_spec,
            username=username,
            password=password,
        )

    return credential_store_lookup


def embedded_basic_auth(endpoint_spec: str) -> rm.RegistryEndpoint | None:
    parsed = urllib.parse.urlparse(_url_with_scheme(endpoint_spec))

    if parsed.username is None:
        return None

    return rm.RegistryEndpoint(
        base_url=endpoint_spec,
        username=urllib.parse.unquote(parsed.username),
        password=urllib.parse.unquote(parsed.password or ''),
    )


def anonymous(endpoint_spec: str) -> rm.RegistryEndpoint:
    return rm.RegistryEndpoint(base_url=endpoint_spec)


def default_strategies(
    credential_store: CredentialStore | None=None,
    token_exchange: collections.abc.Callable[..., regmigrate.aws.EcrAuthorization]=None,
    env: collections.abc.Mapping[str, str] | None=None,
) -> tuple[strategy, ...]:
    if credential_store is None:
        credential_store = CredentialStore.load()

    return (
        managed_identity_strategy(token_exchange=token_exchange, env=env),
        credential_store_strategy(credential_store=credential_store),
        embedded_basic_auth,
        anonymous,
    )


def resolve(
    endpoint_spec: str,
    strategies: collections.abc.Sequence[strategy],
) -> rm.RegistryEndpoint:
    if not endpoint_spec:
        raise rm.ConfigError('registry-url must not be empty')

    for resolve_strategy in strategies:
        try:
            endpoint = resolve_strategy(endpoint_spec)
        except ValueError as ve:
            raise rm.ConfigError(f'invalid registry-url {endpoint_spec=}: {ve}') from ve

        if endpoint:
            logger.info(
                f'using credentials from {resolve_strategy.__name__} for {endpoint.base_url} '
                f'({endpoint.username or "anonymous"})'
            )
            return endpoint

    raise rm.AuthError(f'could not resolve credentials for {endpoint_spec=}')


def connect(
    endpoint_spec: str,
    strategies: collections.abc.Sequence[strategy]=None,
    client_factory: collections.abc.Callable[..., regmigrate.client.Client]=None,
) -> regmigrate.client.Client:
    '''
    resolves credentials for the given endpoint-spec, and returns a client for the resolved
    endpoint. The registry is pinged to surface misconfiguration early; failure to do so is
    reported as `ConnectError`.
    '''
    if strategies is None:
        strategies = default_strategies()
    if not client_factory:
        client_factory = regmigrate.client.Client

    endpoint = resolve(
        endpoint_spec=endpoint_spec,
        strategies=strategies,
    )

    client = client_factory(endpoint=endpoint)

    try:
        client.ping()
    except requests.exceptions.RequestException as re:
        raise rm.ConnectError(
            f'failed to ping registry {endpoint.base_url} as a connection test: {re}'
        ) from re

    logger.info(f'connected to {endpoint.base_url}')

    return client
