from setuptools import setup, find_packages

setup(
    name='kubeadmctl',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'kubeadmctl.modules.kubeadm.installer': ['templates/*.j2'],
    },
    install_requires=[
        'typer',
        'rich',
        'paramiko',
        'pyyaml',
        'pydantic>=2',
        'pydantic-settings',
        'tenacity',
        'jsonschema',
        'jinja2',
        'kubernetes',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'kubeadmctl=kubeadmctl.cli:run'
        ]
    },
    author='Your Name',
    description='Declarative kubeadm cluster bootstrap: provision, init, join and verify multi-node clusters over SSH',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
        'Topic :: System :: Clustering',
    ],
    python_requires='>=3.8',
)
