import argparse
import os
import textwrap

import pytest

import regmigrate.config as examinee
import regmigrate.model as rm


def parsed_argv(**kwargs):
    values = {
        'src_url': None,
        'src_repo': None,
        'src_tag': None,
        'dest_url': None,
        'dest_repo': None,
        'dest_tag': None,
        'repo': None,
        'tag': None,
        'docker_cfg': None,
        'staging_dir': None,
        'timeout': None,
    }
    values.update(kwargs)
    return argparse.Namespace(**values)


@pytest.fixture(autouse=True)
def home(tmp_path, monkeypatch):
    home = os.path.join(tmp_path, 'home')
    os.mkdir(home)
    monkeypatch.setenv('HOME', home)
    return home


def write_yaml(path, content):
    with open(path, 'w') as f:
        f.write(textwrap.dedent(content))
    return path


def test_effective_targets():
    cfg = examinee.MigrationCfg(
        source=rm.MigrationTarget(registry_url='src.example.org', tag='1.0'),
        destination=rm.MigrationTarget(registry_url='dest.example.org', repository='other'),
        repository='image',
    )

    source, destination = cfg.effective_targets()

    assert source == rm.MigrationTarget(
        registry_url='src.example.org',
        repository='image',
        tag='1.0',
    )
    assert destination == rm.MigrationTarget(
        registry_url='dest.example.org',
        repository='other',
        tag=examinee.DEFAULT_TAG,
    )


def test_effective_targets_without_repository():
    source, destination = examinee.MigrationCfg().effective_targets()

    assert source.repository is None
    assert destination.tag == 'latest'

    with pytest.raises(rm.ConfigError):
        source.validate(side='source')


def test_load_config_from_argv():
    cfg = examinee.load_config(
        parsed=parsed_argv(
            src_url='src.example.org',
            dest_url='dest.example.org',
            repo='image',
            tag='1.0',
            timeout=30,
        ),
        env={},
    )

    assert cfg.source.registry_url == 'src.example.org'
    assert cfg.destination.registry_url == 'dest.example.org'
    assert cfg.repository == 'image'
    assert cfg.tag == '1.0'
    assert cfg.timeout_seconds == 30
    assert cfg.staging_dir is None


def test_load_config_from_env():
    cfg = examinee.load_config(env={
        'REGMIGRATE_DOCKER_CFG': '/path/to/config.json',
        'REGMIGRATE_STAGING_DIR': '/var/tmp',
        'REGMIGRATE_TIMEOUT_SECONDS': '42',
    })

    assert cfg.docker_cfg == '/path/to/config.json'
    assert cfg.effective_docker_cfg() == '/path/to/config.json'
    assert cfg.staging_dir == '/var/tmp'
    assert cfg.timeout_seconds == 42


def test_load_config_rejects_invalid_timeout():
    with pytest.raises(rm.ConfigError):
        examinee.load_config(env={'REGMIGRATE_TIMEOUT_SECONDS': 'forever'})


def test_load_config_precedence(tmp_path, home):
    write_yaml(
        os.path.join(home, examinee.USER_HOME_CFG_FILE_NAME),
        '''\
        staging_dir: /from/user-home
        repository: home-image
        ''',
    )
    config_file = write_yaml(
        os.path.join(tmp_path, 'regmigrate.yaml'),
        '''\
        source:
          registry_url: src.example.org
          repository: src-image
        destination:
          registry_url: dest.example.org
        tag: '1.0'
        timeout_seconds: 10
        ''',
    )

    cfg = examinee.load_config(
        parsed=parsed_argv(dest_repo='dest-image', tag=None),
        config_file=config_file,
        env={'REGMIGRATE_TIMEOUT_SECONDS': '20'},
    )

    # user-home file
    assert cfg.staging_dir == '/from/user-home'
    assert cfg.repository == 'home-image'
    # --config file (absent cli value does not overwrite)
    assert cfg.source.registry_url == 'src.example.org'
    assert cfg.tag == '1.0'
    # env overwrites files
    assert cfg.timeout_seconds == 20
    # cli
    assert cfg.destination.repository == 'dest-image'
    assert cfg.destination.registry_url == 'dest.example.org'

    source, destination = cfg.effective_targets()
    assert (source.repository, source.tag) == ('src-image', '1.0')
    assert (destination.repository, destination.tag) == ('dest-image', '1.0')

    cfg = examinee.load_config(
        parsed=parsed_argv(timeout=5),
        config_file=config_file,
        env={'REGMIGRATE_TIMEOUT_SECONDS': '20'},
    )
    assert cfg.timeout_seconds == 5


def test_load_config_missing_file(tmp_path):
    with pytest.raises(rm.ConfigError):
        examinee.load_config(config_file=os.path.join(tmp_path, 'no-such-file.yaml'), env={})


def test_load_config_rejects_invalid_files(tmp_path):
    unknown_key = write_yaml(os.path.join(tmp_path, 'unknown.yaml'), 'no_such_attr: 1\n')
    with pytest.raises(rm.ConfigError):
        examinee.load_config(config_file=unknown_key, env={})

    wrong_type = write_yaml(os.path.join(tmp_path, 'wrong-type.yaml'), 'timeout_seconds: abc\n')
    with pytest.raises(rm.ConfigError):
        examinee.load_config(config_file=wrong_type, env={})

    not_a_mapping = write_yaml(os.path.join(tmp_path, 'list.yaml'), '- a\n- b\n')
    with pytest.raises(rm.ConfigError):
        examinee.load_config(config_file=not_a_mapping, env={})

    broken = write_yaml(os.path.join(tmp_path, 'broken.yaml'), 'source: [\n')
    with pytest.raises(rm.ConfigError):
        examinee.load_config(config_file=broken, env={})
