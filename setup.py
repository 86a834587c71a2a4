"""
Setup script for groupcrypt - end-to-end encryption for group chat.

This library provides:
- X25519 identity keys persisted per user (optionally Argon2id-sealed)
- Pairwise key agreement (X25519 + HKDF-SHA256)
- AES-256-GCM message, group key and call signaling encryption
- Creator-controlled group key distribution with key-mismatch recovery
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='groupcrypt',
    version='1.0.0',
    description='End-to-end encryption for group chat: identity keys, group key distribution and recovery',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'httpx>=0.26.0',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'groupcrypt=groupcrypt.main:main',
        ],
    },
)
