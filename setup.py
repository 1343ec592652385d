from os import path
import io
from setuptools import setup, find_packages

with io.open(path.join(path.abspath(path.dirname(__file__)), 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name = 'filewarden',
    version = '0.1.0',
    description = 'Consistent concurrent file storage with leases and reconciliation',
    long_description=long_description,
    long_description_content_type='text/markdown',
    license = 'GPL',

    packages = find_packages(include=['filewarden', 'filewarden.*']),
    python_requires = '>=3.6',

    install_requires = [
        'gunicorn',
        'gevent',
        'progressbar2',
        'requests',
    ],

    extras_require = {
        # Needed by the server and the reconcile script, requires
        # Berkeley DB headers to build.
        'bsddb': ['bsddb3'],
        'test': ['pytest'],
    },

    entry_points = {
        'console_scripts': [
            'filewarden = filewarden.client.shell:main',
            'filewarden-server = filewarden.servers.run:main',
            'filewarden-reconcile = filewarden.scripts.reconcile:main',
        ],
    }
)
