import setuptools
import os

own_dir = os.path.abspath(os.path.dirname(__file__))


def requirements():
    with open(os.path.join(own_dir, 'requirements.txt')) as f:
        for line in f.readlines():
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            yield line


def version():
    with open(os.path.join(own_dir, 'VERSION')) as f:
        return f.read().strip()


setuptools.setup(
    name='regmigrate',
    version=version(),
    description='copy container images between OCI registries',
    python_requires='>=3.11',
    packages=['regmigrate'],
    install_requires=list(requirements()),
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'regmigrate = regmigrate.__main__:main',
        ],
    },
)
