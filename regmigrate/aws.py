'''
This module contains special handling for interactions with the AWS Elastic Container Registry,
which does not offer static credentials: a short-lived username/password pair has to be exchanged
for AWS access keys via the `GetAuthorizationToken` API.

The main functionality comprises the AWS Signature Version 4 implementation required for the HTTP
api. The boto3 package was not used here to avoid it as dependency.
'''
import base64
import dataclasses
import datetime
import enum
import hashlib
import hmac
import json
import logging
import os
import urllib.parse

import requests


logger = logging.getLogger(__name__)

SERVICE_NAME = 'ecr'


class AwsAction(enum.StrEnum):
    GET_AUTHORIZATION_TOKEN = 'GetAuthorizationToken'


@dataclasses.dataclass(frozen=True)
class AccessKeyCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None

    def __repr__(self) -> str:
        return f'AccessKeyCredentials(access_key_id={self.access_key_id!r})'

    @staticmethod
    def from_env(env=None) -> 'AccessKeyCredentials':
        if env is None:
            env = os.environ

        access_key_id = env.get('AWS_ACCESS_KEY_ID')
        secret_access_key = env.get('AWS_SECRET_ACCESS_KEY')

        if not access_key_id or not secret_access_key:
            raise ValueError('AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY must be set')

        return AccessKeyCredentials(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=env.get('AWS_SESSION_TOKEN') or None,
        )


@dataclasses.dataclass(frozen=True)
class EcrAuthorization:
    proxy_url: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f'EcrAuthorization(proxy_url={self.proxy_url!r}, username={self.username!r})'


def default_region(env=None) -> str | None:
    if env is None:
        env = os.environ

    return env.get('AWS_REGION') or env.get('AWS_DEFAULT_REGION') or None


def parse_managed_identity(identity: str) -> tuple[str, str | None]:
    '''
    parses a managed-identity (i.e. the part following the `ecr:` prefix) into registry-id and
    region (which may be None). The following forms are understood:

        <registry-id>
        <registry-id>:<region>
        <registry-id>.dkr.ecr.<region>.amazonaws.com

    The last form makes the assumption that an AWS registry is always structured according to the
    following pattern: `<registry-id>.dkr.<service-name>.<region-name>.amazonaws.com`
    '''
    if not identity:
        raise ValueError('managed identity must not be empty')

    if '.' in identity:
        registry_id, dkr, service_name, region_name, aws = identity.split('.', maxsplit=4)

        if dkr != 'dkr' or service_name != SERVICE_NAME or aws != 'amazonaws.com':
            raise ValueError(
                'unexpected netloc for aws, expected: '
                '"<registry-id>.dkr.ecr.<region-name>.amazonaws.com", actual: '
                f'"{identity}"'
            )
        return registry_id, region_name

    if ':' in identity:
        registry_id, region_name = identity.split(':', 1)
        return registry_id, region_name or None

    return identity, None


def api_url(region_name: str) -> str:
    return f'https://api.{SERVICE_NAME}.{region_name}.amazonaws.com/'


def prepare_headers(
    action: AwsAction,
    body: bytes,
    region_name: str,
    method: str,
    credentials: AccessKeyCredentials,
    headers: dict | None=None,
    now: datetime.datetime | None=None,
) -> dict[str, str]:
    '''
    This function implements the AWS Signature Version 4 process according to
    https://docs.aws.amazon.com/IAM/latest/UserGuide/reference_sigv.html. The results of this
    process are patched-into the `headers`.
    '''
    if not headers:
        headers = {}
    if not now:
        now = datetime.datetime.now(tz=datetime.UTC)

    api_url_parsed = urllib.parse.urlparse(api_url(region_name=region_name))
    timestamp = now.strftime('%Y%m%dT%H%M%SZ')

    headers |= {
        'Content-Type': 'application/x-amz-json-1.1',
        'X-Amz-Date': timestamp,
        'X-Amz-Target': f'AmazonEC2ContainerRegistry_V20150921.{action}',
    }

    canonical_headers = [
        f'content-type:{headers["Content-Type"]}',
        f'host:{api_url_parsed.netloc}',
        f'x-amz-date:{headers["X-Amz-Date"]}',
    ]
    signed_headers = ['content-type', 'host', 'x-amz-date']

    if credentials.session_token:
        headers['X-Amz-Security-Token'] = credentials.session_token
        canonical_headers.append(f'x-amz-security-token:{credentials.session_token}')
        signed_headers.append('x-amz-security-token')

    canonical_headers.append(f'x-amz-target:{headers["X-Amz-Target"]}')
    signed_headers.append('x-amz-target')
    signed_headers = ';'.join(signed_headers)

    canonical_request = '\n'.join([
        method.upper(),
        api_url_parsed.path,
        '',
        *canonical_headers,
        '',
        signed_headers,
        hashlib.sha256(body).hexdigest(),
    ])

    scope = '/'.join([
        timestamp[0:8],
        region_name,
        SERVICE_NAME,
        'aws4_request',
    ])

    string_to_sign = '\n'.join([
        'AWS4-HMAC-SHA256',
        timestamp,
        scope,
        hashlib.sha256(canonical_request.encode()).hexdigest(),
    ])

    def sign(key: bytes, msg: str) -> hmac.HMAC:
        return hmac.new(key, msg.encode(), hashlib.sha256)

    key_date = sign(f'AWS4{credentials.secret_access_key}'.encode(), timestamp[0:8]).digest()
    key_region = sign(key_date, region_name).digest()
    key_service = sign(key_region, SERVICE_NAME).digest()
    key_signing = sign(key_service, 'aws4_request').digest()
    signature = sign(key_signing, string_to_sign).hexdigest()

    headers['Authorization'] = ', '.join([
        f'AWS4-HMAC-SHA256 Credential={credentials.access_key_id}/{scope}',
        f'SignedHeaders={signed_headers}',
        f'Signature={signature}',
    ])

    return headers


def request(
    action: AwsAction,
    body: bytes,
    region_name: str,
    method: str,
    credentials: AccessKeyCredentials,
    session: requests.Session | None=None,
    headers: dict | None=None,
    timeout_seconds: int | None=None,
) -> requests.Response:
    if not session:
        session = requests.Session()

    url = api_url(region_name=region_name)

    headers = prepare_headers(
        action=action,
        body=body,
        region_name=region_name,
        method=method,
        credentials=credentials,
        headers=headers,
    )

    res = session.request(
        method=method,
        url=url,
        headers=headers,
        data=body,
        timeout=timeout_seconds,
    )

    if not res.ok:
        logger.warning(
            f'req against {url=} failed: {res.status_code=} {res.reason=} {res.content=}'
        )

    res.raise_for_status()

    return res


def authorization_token(
    registry_id: str,
    region_name: str,
    credentials: AccessKeyCredentials,
    session: requests.Session | None=None,
    timeout_seconds: int | None=None,
) -> EcrAuthorization:
    '''
    AWS requires a short-lived password to be created from the access token together with the static
    username "AWS" for authentication. The returned proxy-url is to be used as registry base-url.
    '''
    body = json.dumps({
        'registryIds': [registry_id],
    }).encode()

    res = request(
        action=AwsAction.GET_AUTHORIZATION_TOKEN,
        body=body,
        region_name=region_name,
        method='POST',
        credentials=credentials,
        session=session,
        timeout_seconds=timeout_seconds,
    )

    # because we specified only a single registry-id, there must be only one token in the response
    authorization_data, = res.json()['authorizationData']

    token_decoded = base64.b64decode(authorization_data['authorizationToken']).decode()
    username, password = token_decoded.split(':', 1)

    logger.info(f'retrieved ECR authorization-token for {registry_id=} ({region_name=})')

    return EcrAuthorization(
        proxy_url=authorization_data['proxyEndpoint'],
        username=username,
        password=password,
    )
