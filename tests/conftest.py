from __future__ import annotations

import textwrap

import pytest

from ciadvisor.engine import Engine


def yaml_text(s: str) -> str:
    return textwrap.dedent(s).lstrip("\n")


class MemoryFileStore:
    """In-memory FileStore; `on_read` is called with every path read."""

    def __init__(self, files=None, on_read=None):
        self.files = dict(files or {})
        self.on_read = on_read
        self.reads = []

    def read(self, path):
        self.reads.append(path)
        if self.on_read is not None:
            self.on_read(path)
        if path not in self.files:
            raise FileNotFoundError(f"No such file: '{path}'")
        return self.files[path]

    def write(self, path, text):
        self.files[path] = text

    def exists(self, path):
        return path in self.files


NPM_PIPELINE = yaml_text(
    """
    name: CI
    on: push
    jobs:
      build:
        runs-on: ubuntu-latest
        steps:
          - uses: actions/checkout@v4
          - run: npm install
          - run: npm test
    """
)

SEQUENTIAL_PIPELINE = yaml_text(
    """
    name: Release
    on: [push]
    jobs:
      lint:
        runs-on: ubuntu-latest
        steps:
          - run: echo lint
      test:
        runs-on: ubuntu-latest
        needs: lint
        steps:
          - run: echo test
      build:
        runs-on: ubuntu-latest
        needs: [test]
        steps:
          - run: echo build
      deploy:
        runs-on: ubuntu-latest
        needs: build
        steps:
          - run: echo ship
    """
)


@pytest.fixture
def engine():
    return Engine()


@pytest.fixture
def npm_pipeline():
    return NPM_PIPELINE


@pytest.fixture
def sequential_pipeline():
    return SEQUENTIAL_PIPELINE
