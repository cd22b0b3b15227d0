"""
Setup script for LAN Hub - relay-mediated LAN chat and file sharing.

This package provides:
- A volatile in-memory relay speaking JSON lines over TCP
- Polling peers with presence, a global channel and private rooms
- Room keys distributed through X25519 envelopes, AES-256-GCM bodies
- Chunked file transfers scoped to room participants
- A terminal console client
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='lanhub',
    version='1.0.0',
    description='Relay-mediated LAN chat, rooms and encrypted file sharing',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.11',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'rich>=13.7.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'lanhub=lanhub.main:main',
            'lanhub-relay=lanhub.relay:main',
        ],
    },
)
