#!/usr/bin/python3
import io
import os

from setuptools import find_packages, setup

VERSION = None

here = os.path.abspath(os.path.dirname(__file__))

with io.open(os.path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = '\n' + f.read()

about = {}
if not VERSION:
    with open(os.path.join(here, 'Credpool', '__version__.py')) as f:
        exec(f.read(), about)
else:
    about['__version__'] = VERSION

setup(
  name='Credpool',
  packages=find_packages(include=['Credpool', 'Credpool.*']),
  version=about['__version__'],
  license='MIT',
  description='Bulk import, verification and upkeep of OAuth-style service accounts',
  long_description=long_description,
  long_description_content_type="text/markdown",
  keywords=['oauth', 'credentials', 'accounts', 'import', 'refresh-token'],
  python_requires='>=3.9',
  install_requires=[
      'pydantic>=2',
      'SQLAlchemy>=2',
      'curl_cffi',
      'python-dotenv',
  ],
  extras_require={
      'test': [
          'pytest',
          'pytest-asyncio',
      ],
  },
  entry_points={
      'console_scripts': ['credpool=Credpool.__main__:main'],
  },
  classifiers=[
    'Development Status :: 4 - Beta',
    'Intended Audience :: Developers',
    'License :: OSI Approved :: MIT License',
    'Programming Language :: Python :: 3.9',
    'Programming Language :: Python :: 3.10',
    'Programming Language :: Python :: 3.11',
  ],
)
