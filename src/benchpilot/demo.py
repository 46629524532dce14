"""A small pure-Python suite used when no other suite is configured."""

from __future__ import annotations

import hashlib
import json
import random
import re

from benchpilot.suite import BenchmarkSuite

suite = BenchmarkSuite("demo")

_rng = random.Random(1234)
_INTS = [_rng.randrange(1_000_000) for _ in range(1_000)]
_DOC = {"name": "bench", "values": list(range(50)), "nested": {"a": [1.5, 2.5], "b": None}}
_DOC_TEXT = json.dumps(_DOC)
_BLOB = bytes(_rng.randrange(256) for _ in range(4096))
_WORDS = " ".join(f"word{i}" for i in range(200))
_WORD_RE = re.compile(r"word(\d+)")


@suite.benchmark("collections/sort")
def sorted_ints() -> object:
    return sorted(_INTS)


@suite.benchmark("collections/sort")
def sorted_reversed() -> object:
    return sorted(_INTS, reverse=True)


@suite.benchmark("collections/dict")
def dict_build() -> object:
    return {i: i * 2 for i in range(256)}


@suite.benchmark("text/json")
def dumps() -> object:
    return json.dumps(_DOC)


@suite.benchmark("text/json")
def loads() -> object:
    return json.loads(_DOC_TEXT)


@suite.benchmark("text/regex")
def findall() -> object:
    return _WORD_RE.findall(_WORDS)


@suite.benchmark("hash")
def sha256_4k() -> object:
    return hashlib.sha256(_BLOB).digest()
