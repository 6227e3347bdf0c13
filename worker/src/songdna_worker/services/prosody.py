"""Syllable and rhyme heuristics for Latin-alphabet lyrics."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence

VOWELS = "aeiouy"
NO_WORD = "X"
_SCHEME_LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWYZ"
_WORD_PATTERN = re.compile(r"[a-z']+")
_VOWEL_RUN = re.compile(r"[aeiouy]+")


def tokenize(line: str) -> List[str]:
    words: List[str] = []
    for raw in _WORD_PATTERN.findall(line.lower()):
        word = raw.replace("'", "")
        if word:
            words.append(word)
    return words


def count_syllables(word: str) -> int:
    """Vowel-group estimate: runs of aeiouy, silent trailing e, floor 1.

    Returns 0 for tokens that carry no letters at all.
    """
    letters = "".join(ch for ch in word.lower() if "a" <= ch <= "z")
    if not letters:
        return 0
    count = len(_VOWEL_RUN.findall(letters))
    if len(letters) > 1 and letters.endswith("e") and letters[-2] not in VOWELS:
        count -= 1
    return max(1, count)


def line_syllables(line: str) -> int:
    return sum(count_syllables(word) for word in tokenize(line))


def last_word(line: str) -> Optional[str]:
    words = tokenize(line)
    return words[-1] if words else None


def rhyme_key(word: str) -> str:
    letters = "".join(ch for ch in word.lower() if "a" <= ch <= "z")
    if len(letters) >= 4:
        return letters[-3:]
    if len(letters) >= 2:
        return letters[-2:]
    return letters


def keys_match(left: str, right: str) -> bool:
    if not left or not right:
        return False
    if left == right:
        return True
    shorter, longer = sorted((left, right), key=len)
    return len(shorter) >= 2 and longer.endswith(shorter)


def _letter(index: int) -> str:
    if index < len(_SCHEME_LETTERS):
        return _SCHEME_LETTERS[index]
    return _SCHEME_LETTERS[-1]


def rhyme_scheme(lines: Sequence[str]) -> str:
    """Greedy letter assignment over line-final words."""
    letters: List[str] = []
    keys: List[Optional[str]] = []
    next_letter = 0
    for line in lines:
        word = last_word(line)
        if word is None:
            letters.append(NO_WORD)
            keys.append(None)
            continue
        key = rhyme_key(word)
        assigned: Optional[str] = None
        for previous_key, previous_letter in zip(keys, letters):
            if previous_key is not None and keys_match(previous_key, key):
                assigned = previous_letter
                break
        if assigned is None:
            assigned = _letter(next_letter)
            next_letter += 1
        letters.append(assigned)
        keys.append(key)
    return "".join(letters)


def _same_pair(scheme: str, i: int, j: int) -> bool:
    return scheme[i] == scheme[j] and scheme[i] != NO_WORD


def scheme_mismatches(expected: str, actual: str) -> int:
    """Count line pairs whose rhyme/no-rhyme relation differs between schemes."""
    length = min(len(expected), len(actual))
    mismatches = 0
    for i in range(length):
        for j in range(i + 1, length):
            if _same_pair(expected, i, j) != _same_pair(actual, i, j):
                mismatches += 1
    return mismatches


def scheme_pair_count(length: int) -> int:
    return length * (length - 1) // 2


def canonical_scheme(scheme: str) -> str:
    mapping: dict[str, str] = {}
    result: List[str] = []
    for letter in scheme.upper():
        if letter == NO_WORD:
            result.append(NO_WORD)
            continue
        if letter not in mapping:
            mapping[letter] = _letter(len(mapping))
        result.append(mapping[letter])
    return "".join(result)


def fit_scheme(scheme: str, line_count: int) -> str:
    """Truncate or extend a scheme to ``line_count`` lines.

    Extension repeats the block with fresh letters, so ``AABB`` over six
    lines becomes ``AABBCC``.
    """
    if line_count <= 0:
        return ""
    base = canonical_scheme(scheme) or "AABB"
    if len(base) >= line_count:
        return canonical_scheme(base[:line_count])
    block_letters = sorted({letter for letter in base if letter != NO_WORD})
    shift = len(block_letters) or 1
    pieces: List[str] = []
    repeat = 0
    while sum(len(piece) for piece in pieces) < line_count:
        pieces.append(
            "".join(
                letter
                if letter == NO_WORD
                else _letter(_SCHEME_LETTERS.index(letter) + repeat * shift)
                for letter in base
            )
        )
        repeat += 1
    return canonical_scheme("".join(pieces)[:line_count])


def words_in(lines: Iterable[str]) -> List[str]:
    words: List[str] = []
    for line in lines:
        words.extend(tokenize(line))
    return words
