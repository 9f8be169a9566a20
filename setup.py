from setuptools import setup, find_packages

setup(
    name='raibid',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer',
        'rich',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'urllib3',
        'requests',
        'PyYAML',
        'python-dotenv',
        'pydantic>=2',
        'jsonschema',
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'raibid=raibid.cli:app'
        ]
    },
    description='Installs and validates a self-hosted CI stack (k3s, Redis, Gitea, KEDA, Flux) on a single host',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.9',
)
