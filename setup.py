import os.path

from setuptools import setup


def read(fname):
    with open(os.path.join(os.path.dirname(__file__), fname)) as fp:
        return fp.read()

setup(
    name='expo-push-client',
    version='0.2.0',
    author='Sardar Yumatov',
    author_email='ja.doma@gmail.com',
    description='Python client for Expo push notification service',
    long_description=read('README.rst'),
    packages=['expoclient'],
    license="Apache 2.0",
    keywords='expo push notification messaging iOS android',
    python_requires='>=3.7',
    install_requires=['requests'],
    extras_require={'test': ['mock', 'pytest']},
    classifiers = [ 'Development Status :: 4 - Beta',
                    'Intended Audience :: Developers',
                    'License :: OSI Approved :: Apache Software License',
                    'Programming Language :: Python',
                    'Programming Language :: Python :: 3',
                    'Topic :: Software Development :: Libraries :: Python Modules']
)
