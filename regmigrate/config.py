'''
migration configuration.

Configuration is read from (in ascending order of precedence):

- user-home config file (`~/.regmigrate.yaml`)
- config file passed via cli (`--config`)
- environment variables
- cli arguments

Values that are absent (None) never overwrite values from sources of lower precedence.
'''
import dataclasses
import os

import dacite
import yaml

import regmigrate.auth
import regmigrate.model as rm

DEFAULT_TAG = 'latest'
USER_HOME_CFG_FILE_NAME = '.regmigrate.yaml'


@dataclasses.dataclass
class MigrationCfg:
    source: rm.MigrationTarget = dataclasses.field(default_factory=rm.MigrationTarget)
    destination: rm.MigrationTarget = dataclasses.field(default_factory=rm.MigrationTarget)
    repository: str | None = None # fallback for both source and destination
    tag: str | None = None # fallback for both source and destination
    docker_cfg: str | None = None
    staging_dir: str | None = None
    timeout_seconds: int | None = None

    def effective_targets(self) -> tuple[rm.MigrationTarget, rm.MigrationTarget]:
        '''
        returns source and destination targets, w/ absent repository and tag values replaced
        by the shared fallback values (tag defaults to `latest`)
        '''
        tag = self.tag or DEFAULT_TAG

        def effective_target(target: rm.MigrationTarget) -> rm.MigrationTarget:
            return rm.MigrationTarget(
                registry_url=target.registry_url,
                repository=target.repository or self.repository,
                tag=target.tag or tag,
            )

        return effective_target(self.source), effective_target(self.destination)

    def effective_docker_cfg(self) -> str | None:
        return self.docker_cfg or regmigrate.auth.find_docker_cfg()


def _none_or_empty(v):
    if v is None or v == () or v == [] or v == {}:
        return True
    return False


def _merge_dicts(left: dict, right: dict) -> dict:
    merged = dict(left)
    for k, v in right.items():
        if _none_or_empty(v):
            continue
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _merge_dicts(merged[k], v)
        else:
            merged[k] = v
    return merged


def merge_cfgs(left: MigrationCfg | None, right: MigrationCfg | None) -> MigrationCfg | None:
    if not left or not right:
        return left or right # nothing to merge

    merged = _merge_dicts(
        dataclasses.asdict(left),
        dataclasses.asdict(right),
    )

    return from_dict(merged)


def from_dict(raw: dict) -> MigrationCfg:
    try:
        return dacite.from_dict(
            data_class=MigrationCfg,
            data=raw,
            config=dacite.Config(strict=True),
        )
    except (dacite.DaciteError, ValueError) as e:
        raise rm.ConfigError(f'invalid configuration: {e}') from e


def config_from_file(path: str) -> MigrationCfg:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise rm.ConfigError(f'failed to read config file {path}: {e}') from e

    if not isinstance(raw, dict):
        raise rm.ConfigError(f'expected a mapping in config file {path}')

    return from_dict(raw)


def _config_from_user_home() -> MigrationCfg | None:
    cfg_file_path = os.path.join(os.path.expanduser('~'), USER_HOME_CFG_FILE_NAME)
    if not os.path.isfile(cfg_file_path):
        return None

    return config_from_file(cfg_file_path)


def _config_from_env(env=None) -> MigrationCfg:
    if env is None:
        env = os.environ

    if timeout_seconds := env.get('REGMIGRATE_TIMEOUT_SECONDS'):
        try:
            timeout_seconds = int(timeout_seconds)
        except ValueError as ve:
            raise rm.ConfigError(f'REGMIGRATE_TIMEOUT_SECONDS: {ve}') from ve
    else:
        timeout_seconds = None

    return from_dict({
        'docker_cfg': env.get('REGMIGRATE_DOCKER_CFG'),
        'staging_dir': env.get('REGMIGRATE_STAGING_DIR'),
        'timeout_seconds': timeout_seconds,
    })


def _config_from_parsed_argv(parsed) -> MigrationCfg | None:
    if not parsed:
        return None

    return from_dict({
        'source': {
            'registry_url': parsed.src_url,
            'repository': parsed.src_repo,
            'tag': parsed.src_tag,
        },
        'destination': {
            'registry_url': parsed.dest_url,
            'repository': parsed.dest_repo,
            'tag': parsed.dest_tag,
        },
        'repository': parsed.repo,
        'tag': parsed.tag,
        'docker_cfg': parsed.docker_cfg,
        'staging_dir': parsed.staging_dir,
        'timeout_seconds': parsed.timeout,
    })


def load_config(
    parsed=None,
    config_file: str | None=None,
    env=None,
) -> MigrationCfg:
    cfg = MigrationCfg()

    if config_file and not os.path.isfile(config_file):
        raise rm.ConfigError(f'not an existing file: {config_file=}')

    additional_cfgs = (
        _config_from_user_home(),
        config_from_file(config_file) if config_file else None,
        _config_from_env(env=env),
        _config_from_parsed_argv(parsed),
    )

    for additional_cfg in additional_cfgs:
        if not additional_cfg:
            continue

        cfg = merge_cfgs(cfg, additional_cfg)

    return cfg
