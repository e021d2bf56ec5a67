from setuptools import setup, find_packages

setup(
    name='cpsync',
    version='0.1.0',
    packages=find_packages(include=['cpsync', 'cpsync.*']),
    entry_points={
        'console_scripts': [
            'cpsync=cpsync.cli:main',
        ],
    },
    install_requires=[
        'python-dotenv',
        'pyyaml',
        'pydantic>=2',
        'requests',
        'click',
        'msal',
        'azure-storage-blob>=12.4',
        'fastapi',
        'uvicorn',
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ],
    },
    author='While True Industries',
    author_email='adam@whiletrue.industries',
    description='Document broker between SharePoint libraries and blob storage',
    python_requires='>=3.10',
)
