"""
Content fingerprints for instruction chains.

A fingerprint identifies a whole prefix of a stage: the base identity plus
every instruction appended to it so far. It is a pure function of content,
so identical build descriptions agree on fingerprints across machines and runs.
"""

import hashlib
from typing import Dict, Iterable, List

from config import Instruction

PREFIX = "sha256:"


def _digest(*parts: str) -> str:
    # Length-prefix each part so ("ab", "c") and ("a", "bc") never collide
    h = hashlib.sha256()
    for part in parts:
        data = part.encode("utf-8")
        h.update(str(len(data)).encode("ascii") + b":")
        h.update(data)
    return PREFIX + h.hexdigest()


def fingerprint(base_fingerprint: str, instruction_text: str) -> str:
    """Fingerprint of instruction_text appended to base_fingerprint"""
    if not isinstance(base_fingerprint, str) or not isinstance(instruction_text, str):
        raise TypeError("fingerprint() expects str arguments")
    return _digest("layer", base_fingerprint, instruction_text)


def seed_fingerprint(image_reference: str) -> str:
    """Identity seed for an external base image with no known content identity"""
    if not isinstance(image_reference, str):
        raise TypeError("seed_fingerprint() expects a str image reference")
    return _digest("image", image_reference)


def fold(base_fingerprint: str, texts: Iterable[str]) -> List[str]:
    chain: List[str] = []
    current = base_fingerprint
    for text in texts:
        current = fingerprint(current, text)
        chain.append(current)
    return chain


def instruction_content(instruction: Instruction, source_fingerprints: Dict[str, str]) -> str:
    """Content hashed for an instruction.

    Copies from another stage embed that stage's final fingerprint, so the
    instruction changes identity whenever the copied stage's content does.
    """
    if not instruction.sources:
        return instruction.text
    lines = [instruction.text]
    for ref in instruction.sources:
        lines.append(f"--from={ref}@{source_fingerprints[ref]}")
    return "\n".join(lines)


def short(fp: str) -> str:
    if fp.startswith(PREFIX):
        fp = fp[len(PREFIX):]
    return fp[:12]
