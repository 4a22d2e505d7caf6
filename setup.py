from setuptools import setup
import ntfsreader

setup(name='NtfsReader',
    description='Enumerate the files of an NTFS volume from its raw MFT',
    version=ntfsreader.__version__,
    license='Apache License 2.0',
    python_requires='>=3.6',
    install_requires=[
        'jinja2',
        'tqdm',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    packages=[
        'ntfsreader',
    ],
    entry_points={
        'console_scripts': [
            'list_mft=ntfsreader.list_mft:main',
        ],
    },
)
