import setuptools

VERSION = '0.1.0'

setup_params = dict(
    name='netcache',
    version=VERSION,
    author='Kenneth VanderLinde',
    author_email='kwvanderlinde@gmail.com',
    keywords='requests cache redirects timeouts',
    packages=setuptools.find_namespace_packages(include=['netcache']),
    package_data={'': ['LICENSE.txt']},
    package_dir={'netcache': 'netcache'},
    include_package_data=True,
    description='A thread-safe disk cache, timeouts and redirect following for requests, driven by asyncio',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests>=2.25', 'platformdirs>=2.0'],
    extras_require={
        'dev': [
            'mockito>=1.2',
            'pytest>=6.0',
            'pytest-cov>=2.10',
            'ddt>=1.4',
            'responses>=0.17',
        ]
    },
    entry_points={},
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
