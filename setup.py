"""Setup script for agent-relay.

Distribution name: agent-relay
Python packages: agent_relay (adapters, relay server and reconnecting client)
"""

from setuptools import setup, find_packages


def _read_readme() -> str:
    try:
        with open('README.md', 'r', encoding='utf-8') as f:
            return f.read()
    except Exception:
        return 'agent-relay - canonical event relay for long-running coding agents.'


setup(
    name='agent-relay',
    version='0.1.0',
    description='Normalize coding-agent streams into canonical events and relay them to reconnecting clients',
    long_description=_read_readme(),
    long_description_content_type='text/markdown',
    author='agent-relay Contributors',
    author_email='',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.10',
    install_requires=[
        'fastapi>=0.104.0',
        'uvicorn>=0.24.0',
        'pydantic>=2.0.0',
        'python-dotenv>=1.0.0',
        # Client runtime
        'aiohttp>=3.9.0',
        # Claude adapter
        'claude-agent-sdk>=0.1.0',
    ],
    entry_points={
        'console_scripts': [
            'agent-relay=agent_relay.server:main',
        ]
    },
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
            'pytest-cov>=4.1.0',
            # fastapi.testclient transport
            'httpx>=0.25.0',
        ],
        'dev': [
            'black>=23.0.0',
            'ruff>=0.1.0',
            'mypy>=1.6.0',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
)
