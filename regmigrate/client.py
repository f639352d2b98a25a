import base64
import dataclasses
import datetime
import enum
import json
import logging
import typing
import urllib.parse

import dacite
import dateutil.parser
import requests
import requests.auth
import www_authenticate

import regmigrate.model as rm
import regmigrate.util

urljoin = regmigrate.util.urljoin

logger = logging.getLogger(__name__)

request_logger = logging.getLogger('regmigrate.client.request_logger')

USER_AGENT = 'regmigrate (python3)'


def _append_b64_padding_if_missing(b64_str: str):
    if b64_str[-1] == '=':
        return b64_str

    if (mod4 := len(b64_str) % 4) == 2:
        return b64_str + '=' * 2
    elif mod4 == 3:
        return b64_str + '='
    elif mod4 == 0:
        return b64_str
    else:
        raise ValueError('this is a bug')


class AuthenticationError(requests.exceptions.RequestException):
    '''
    raised if a registry (or its token-server) returned an unusable authentication-challenge or
    token-response
    '''
    pass


class AuthMethod(enum.Enum):
    BEARER = 'bearer'
    BASIC = 'basic'


@dataclasses.dataclass
class OauthToken:
    token: str
    scope: str
    expires_in: int | None = None
    issued_at: str | None = None

    def valid(self):
        issued_at = dateutil.parser.isoparse(self.issued_at)
        # pessimistically deduct 30s, to be on the safe side
        expiry_date = issued_at + datetime.timedelta(seconds=self.expires_in - 30)

        now = datetime.datetime.now(tz=datetime.timezone.utc)
        return now < expiry_date

    def __post_init__(self):
        if not self.issued_at:
            self.issued_at = datetime.datetime.now(tz=datetime.timezone.utc).isoformat()
        if self.expires_in:
            return

        # check if format seems to be jwt
        if self.token.count('.') >= 2:
            payload = self.token.split('.')[1]
            # add padding (JWT by convention has unpadded base64)
            payload = _append_b64_padding_if_missing(b64_str=payload)

            try:
                parsed = json.loads(base64.urlsafe_b64decode(payload.encode('utf-8')))
            except ValueError:
                parsed = {}

            exp = parsed.get('exp')
            iat = parsed.get('iat')

            if exp and iat:
                self.expires_in = exp - iat
                self.issued_at = datetime.datetime.fromtimestamp(iat, tz=datetime.timezone.utc)\
                    .isoformat()
                return

        # hard-code a value in the future since it is not given
        self.expires_in = datetime.timedelta(minutes=10).seconds


class OauthTokenCache:
    def __init__(self):
        self.tokens = {} # {scope: token}

    def token(self, scope: str) -> OauthToken | None:
        # purge expired tokens
        self.tokens = {s:t for s,t in self.tokens.items() if t.valid()}

        return self.tokens.get(scope)

    def set_token(self, token: OauthToken):
        if not token.valid():
            raise ValueError(f'token expired: {token.scope=}')

        self.tokens[token.scope] = token


class Routes:
    def __init__(
        self,
        base_url: str,
    ):
        self.base_url = regmigrate.util.normalise_registry_url(base_url)

    def api_base_url(self) -> str:
        return urljoin(self.base_url, 'v2') + '/'

    def repository_url(self, repository: str) -> str:
        return urljoin(
            self.api_base_url(),
            repository,
        )

    def uploads_url(self, repository: str) -> str:
        return urljoin(
            self.repository_url(repository),
            'blobs',
            'uploads',
        ) + '/'

    def blob_url(self, repository: str, digest: str) -> str:
        return urljoin(
            self.repository_url(repository),
            'blobs',
            digest,
        )

    def manifest_url(self, repository: str, tag: str) -> str:
        if not tag:
            raise ValueError(f'{repository=}: tag must not be empty')

        return urljoin(
            self.repository_url(repository),
            'manifests',
            tag,
        )


def _scope(repository: str, action: str):
    # action = 'pull' | 'push,pull'
    return f'repository:{repository}:{action}'


class Client:
    '''
    client for a single OCI registry (distribution-spec v2), using the credentials of the passed
    endpoint. Depending on the registry's authentication-challenge, credentials are either sent
    via HTTP-basic-auth, or exchanged for (cached) bearer tokens.
    '''
    def __init__(
        self,
        endpoint: rm.RegistryEndpoint,
        routes: Routes=None,
        disable_tls_validation=False,
        timeout_seconds: int=None,
        session: requests.Session=None,
    ):
        self.endpoint = endpoint
        self.routes = routes or Routes(base_url=endpoint.base_url)
        self.token_cache = OauthTokenCache()
        self.auth_method: AuthMethod | None = None
        if not session:
            self.session = requests.Session()
        else:
            self.session = session
        self.disable_tls_validation = disable_tls_validation

        if timeout_seconds:
            timeout_seconds = int(timeout_seconds)
        self.timeout_seconds = timeout_seconds

    def _basic_auth(self) -> requests.auth.HTTPBasicAuth | None:
        if self.endpoint.anonymous:
            return None

        return requests.auth.HTTPBasicAuth(
            username=self.endpoint.username,
            password=self.endpoint.password,
        )

    def _authenticate(
        self,
        scope: str | None,
    ):
        if self.auth_method is AuthMethod.BASIC:
            return # basic-auth does not require any additional preliminary steps
        if self.auth_method is AuthMethod.BEARER and self.token_cache.token(scope=scope or ''):
            return # no re-auth required, yet

        if self.endpoint.anonymous:
            logger.debug(f'no credentials for {self.endpoint.base_url} - attempting anonymous-auth')

        res = self.session.get(
            url=self.routes.api_base_url(),
            verify=not self.disable_tls_validation,
            timeout=self.timeout_seconds,
        )

        if challenge_header := res.headers.get('www-authenticate'):
            auth_challenge = www_authenticate.parse(challenge_header)
        else:
            auth_challenge = {}

        # fallback to basic-auth if endpoint does not state what it wants
        if 'basic' in auth_challenge or not auth_challenge:
            self.auth_method = AuthMethod.BASIC
            return # no additional preliminary steps required for basic-auth
        elif 'bearer' in auth_challenge:
            bearer = auth_challenge['bearer']
            self.auth_method = AuthMethod.BEARER
        else:
            logger.warning(f'did not understand {auth_challenge=} - falling back to basic-auth')
            self.auth_method = AuthMethod.BASIC
            return

        query = {}
        if service := bearer.get('service'):
            query['service'] = service
        if scope:
            query['scope'] = scope

        if not (realm := bearer.get('realm')):
            raise AuthenticationError(
                f'no realm in bearer-challenge from {self.routes.api_base_url()}'
            )

        if query:
            realm += '?' + urllib.parse.urlencode(query)

        res = self.session.get(
            url=realm,
            verify=not self.disable_tls_validation,
            auth=self._basic_auth(),
            timeout=self.timeout_seconds,
        )

        if not res.ok:
            logger.warning(
                f'rq against {realm=} failed: {res.status_code=} {res.reason=} {res.content=}'
            )

        res.raise_for_status()

        try:
            token_dict = res.json()
            if not isinstance(token_dict, dict):
                raise ValueError(f'expected a json-object, got {token_dict=}')

            # some token-servers (following OAuth2) return `access_token` rather than `token`
            if not 'token' in token_dict and 'access_token' in token_dict:
                token_dict['token'] = token_dict['access_token']
            token_dict['scope'] = scope or ''

            token = dacite.from_dict(
                data=token_dict,
                data_class=OauthToken,
            )

            self.token_cache.set_token(token)
        except (dacite.DaciteError, ValueError, TypeError) as e:
            raise AuthenticationError(f'unusable token-response from {realm=}: {e}') from e

    def _request(
        self,
        url: str,
        scope: str | None,
        method: str='GET',
        headers: dict=None,
        raise_for_status=True,
        warn_if_not_ok=True,
        **kwargs,
    ) -> requests.Response:
        if not 'timeout' in kwargs and self.timeout_seconds:
            kwargs['timeout'] = self.timeout_seconds

        self._authenticate(scope=scope)

        headers = headers or {}
        headers['User-Agent'] = USER_AGENT
        auth = None

        if self.auth_method is AuthMethod.BASIC:
            auth = self._basic_auth()
        else:
            headers = {
              'Authorization': f'Bearer {self.token_cache.token(scope=scope or "").token}',
              **headers,
            }

        kwargs['verify'] = not self.disable_tls_validation

        request_logger.debug(f'request sent {method=} {url=}')

        res = self.session.request(
            method=method,
            url=url,
            auth=auth,
            headers=headers,
            **kwargs,
        )
        if not res.ok and warn_if_not_ok:
            logger.warning(
                f'rq against {url=} failed {res.status_code=} {res.reason=} {method=}'
            )

        if raise_for_status:
            if res.status_code != 404 and not res.ok:
                logger.debug(f'{url=} {res.headers=}')
            try:
                res.raise_for_status()
            except requests.exceptions.HTTPError:
                if kwargs.get('stream'):
                    # callers never get hold of the response, so release the connection here
                    res.close()
                raise

        return res

    def ping(self):
        '''
        connection-test: checks the registry is reachable, and accepts the configured credentials
        '''
        self._request(
            url=self.routes.api_base_url(),
            scope=None,
            method='GET',
        )

    def manifest(
        self,
        repository: str,
        tag: str,
        accept: str=rm.MimeTypes.single_image,
    ) -> rm.Manifest:
        '''
        returns the manifest for the given repository and tag. The returned manifest's `raw`
        attribute holds the unaltered bytes as returned by the registry.

        raises requests.exceptions.HTTPError if the manifest could not be retrieved, and
        regmigrate.model.FetchError if it could not be parsed (or is a multi-arch manifest).
        '''
        res = self._request(
            url=self.routes.manifest_url(repository=repository, tag=tag),
            scope=_scope(repository=repository, action='pull'),
            headers={
                'Accept': accept,
            },
        )

        return rm.Manifest.parse(
            raw=res.content,
            content_type=res.headers.get('Content-Type'),
        )

    def put_manifest(
        self,
        repository: str,
        tag: str,
        manifest: rm.Manifest,
    ) -> requests.Response:
        logger.info(f'manifest-mimetype: {manifest.media_type=}')

        res = self._request(
            url=self.routes.manifest_url(repository=repository, tag=tag),
            scope=_scope(repository=repository, action='push,pull'),
            method='PUT',
            raise_for_status=False,
            headers={
                'Content-Type': manifest.media_type,
            },
            data=manifest.raw,
        )

        if not res.ok:
            logger.warning(f'manifest was rejected: {res.status_code=} {res.content=}')
        res.raise_for_status()

        return res

    def blob_exists(
        self,
        repository: str,
        digest: str,
    ) -> bool:
        res = self._request(
            url=self.routes.blob_url(repository=repository, digest=digest),
            scope=_scope(repository=repository, action='pull'),
            method='HEAD',
            raise_for_status=False,
            warn_if_not_ok=False,
        )

        if res.status_code == requests.codes.NOT_FOUND: # noqa
            return False

        res.raise_for_status()

        return True

    def download_blob(
        self,
        repository: str,
        digest: str,
    ) -> requests.Response:
        '''
        returns the (streamed) response for the requested blob. Callers are expected to close it
        after consuming its content.
        '''
        return self._request(
            url=self.routes.blob_url(repository=repository, digest=digest),
            scope=_scope(repository=repository, action='pull'),
            method='GET',
            stream=True,
            timeout=None,
        )

    def upload_blob(
        self,
        repository: str,
        digest: str,
        data: typing.BinaryIO | bytes,
        octets_count: int,
    ) -> requests.Response:
        '''
        uploads the given blob (filelike objects are streamed by http.client) under the given
        digest. The digest is passed verbatim; it is not calculated from the uploaded data.
        '''
        logger.debug(f'single-post {repository=} {digest=} {octets_count=}')
        scope = _scope(repository=repository, action='push,pull')

        # according to distribution-spec, single-POST should also work - however this seems not to
        # be true for registry-1.docker.io. Hence, always do a two-step upload
        res = self._request(
            url=self.routes.uploads_url(repository=repository),
            scope=scope,
            method='POST',
            headers={
                'Content-Length': '0',
            },
        )

        upload_url = res.headers.get('Location')
        if not upload_url:
            raise ValueError(f'registry did not return upload-location for {repository=}')

        # returned url _may_ be relative
        if upload_url.startswith('/'):
            parsed_url = urllib.parse.urlparse(res.url)
            upload_url = f'{parsed_url.scheme}://{parsed_url.netloc}{upload_url}'

        if '?' in upload_url:
            prefix = '&'
        else:
            prefix = '?'

        upload_url += prefix + urllib.parse.urlencode({'digest': digest})

        res = self._request(
            url=upload_url,
            scope=scope,
            method='PUT',
            headers={
                'Content-Type': 'application/octet-stream',
                'Content-Length': str(octets_count),
            },
            data=data,
            raise_for_status=False,
            timeout=None,
        )

        if not res.status_code == 201: # spec says it MUST be 201
            # also, 202 indicates the upload actually did not succeed e.g. for "docker-hub"
            logger.warning(f'{repository=} {res.status_code=} {digest=} - PUT may have failed')

        res.raise_for_status()

        return res
