from setuptools import setup

setup(
    name='atmfjstc-buffer-reader',
    version='1.0.0',

    author_email='atmfjstc@protonmail.com',

    package_dir={'': 'src'},
    packages=['atmfjstc.lib.buffer_reader'],

    install_requires=[
        'atmfjstc-ez-repr>=1.1, <2',
    ],

    extras_require={
        'test': ['pytest'],
    },

    zip_safe=True,

    description="A bounds-checked cursor for decoding binary data held in memory",

    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Typing :: Typed",
    ],
    python_requires='>=3.7',
)
