import urllib.parse


def urljoin(*parts):
    if len(parts) == 1:
        return parts[0]
    first = parts[0]
    last = parts[-1]
    middle = parts[1:-1]

    first = first.rstrip('/')
    middle = list(map(lambda s: s.strip('/'), middle))
    last = last.lstrip('/')

    return '/'.join([first] + middle + [last])


def normalise_registry_url(registry_url: str) -> str:
    '''
    returns the given registry-url w/ a scheme (defaulting to https), w/o userinfo, and w/o
    trailing slash. Paths are kept (some registries are served below a path-prefix).
    '''
    if not isinstance(registry_url, str) or not registry_url:
        raise ValueError(registry_url)

    if not '://' in registry_url:
        registry_url = f'https://{registry_url}'

    parsed = urllib.parse.urlparse(registry_url)

    netloc = parsed.netloc.rsplit('@', 1)[-1]
    if not netloc:
        raise ValueError(f'not a valid registry-url: {registry_url=}')

    path = parsed.path.rstrip('/')
    # api-route is added by client
    path = path.removesuffix('/v2')

    return f'{parsed.scheme}://{netloc}{path}'


def registry_host(registry_url: str) -> str:
    '''
    returns the hostname (w/o port) of the given registry-url
    '''
    if not '://' in registry_url:
        registry_url = f'https://{registry_url}'

    hostname = urllib.parse.urlparse(registry_url).hostname
    if not hostname:
        raise ValueError(f'could not determine hostname: {registry_url=}')

    # of course, docker.io gets special handling
    if hostname in ('docker.io', 'index.docker.io'):
        hostname = 'registry-1.docker.io'

    return hostname
