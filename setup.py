#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A setuptools based setup module.
See:
https://packaging.python.org/en/latest/distributing.html
https://github.com/pypa/sampleproject
"""


# Always prefer setuptools over distutils
from setuptools import setup

__version__ = "0.2.0"

description = "A Python package and server for collecting browser " \
              "Reporting API, CSP, SMTP TLS and DMARC reports"

setup(
    name='network-journal',

    version=__version__,

    description=description,
    long_description=description,

    license='Apache 2.0',

    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',
        "Intended Audience :: Information Technology",
        "Intended Audience :: System Administrators",
        'Operating System :: OS Independent',

        'License :: OSI Approved :: Apache Software License',

        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],

    keywords='Reporting API, CSP, NEL, SMTP TLS, DMARC, reporting',

    packages=["networkjournal", "networkjournal.mail"],

    python_requires='>=3.9',

    install_requires=['xmltodict>=0.12.0',
                      'imapclient>=2.1.0',
                      'mailsuite>=1.6.1',
                      'mail-parser>=3.15.0',
                      'ua-parser>=1.0.0',
                      'PyYAML>=5.4',
                      'Flask>=2.0.0',
                      ],

    extras_require={
        'test': ['pytest>=7.0.0'],
    },

    entry_points={
        'console_scripts': ['network-journal=networkjournal.cli:_main'],
    }
)
