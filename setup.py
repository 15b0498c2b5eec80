from setuptools import setup
import sys
import os

# allow importing nfsm
sys.path.append(os.path.dirname(__file__))

from nfsm import __version__ as nfsm_version

with open(os.path.join(os.path.dirname(__file__), "README.md"), "r") as f:
    readme = f.read()

setup(
        name="nfsm",
        version=nfsm_version,
        py_modules=["nfsm"],
        description="Compiles arrow rules into nondeterministic finite and pushdown automata",
        entry_points={
            "console_scripts": ["nfsm=nfsm:main"]
        },
        install_requires=["lark>=1.1,<2"],

        license="GPLv3",
        long_description=readme,
        long_description_content_type="text/markdown",

        keywords="automaton nfa pda state-machine parser cli tool",

        extras_require={
            "debug": ["graphviz>=0.14", "pydot"],
            "tests": ["pytest", "hypothesis"],
            "coverage": ["pytest-cov"]
        },
        python_requires=">=3.8",

        classifiers=[
            "Development Status :: 3 - Alpha",
            "Environment :: Console",
            "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
            "Intended Audience :: Developers",
            "Programming Language :: JavaScript",
            "Programming Language :: Python :: 3",
            "Topic :: Software Development :: Code Generators"
        ]
)
