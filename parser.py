import json
import re
import shlex
from typing import Any, Dict, List, Optional, Tuple

import yaml

from config import KNOWN_KEYWORDS, Instruction, Stage
from errors import ParseError

FROM_RE = re.compile(r"^FROM\s+(?:--platform=\S+\s+)?(\S+)(?:\s+AS\s+(\S+))?\s*$", re.IGNORECASE)
FROM_FLAG_RE = re.compile(r"--from=(\S*)")


class DeclarationParser:
    """Turns a Dockerfile or a YAML/JSON stage declaration into Stage records"""

    def parse_file(self, file_path: str) -> List[Stage]:
        lower = file_path.lower()
        if lower.endswith((".yml", ".yaml")):
            return self.parse_yaml(file_path)
        if lower.endswith(".json"):
            return self.parse_json(file_path)
        return self.parse_dockerfile(file_path)

    def parse_yaml(self, file_path: str) -> List[Stage]:
        """Parse YAML declaration file into stages"""
        with open(file_path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ParseError(f"Invalid YAML in {file_path}: {e}") from e
        return self.parse_dict(data)

    def parse_json(self, file_path: str) -> List[Stage]:
        """Parse JSON declaration file into stages"""
        with open(file_path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ParseError(f"Invalid JSON in {file_path}: {e}") from e
        return self.parse_dict(data)

    def parse_dict(self, data: Dict[str, Any]) -> List[Stage]:
        """Convert a declaration mapping to stages.

        stages:
          - name: stage1
            from: debian
            instructions:
              - ENV LAYER=stage1
              - RUN touch /tmp/stage1.txt
        """
        if not isinstance(data, dict) or not isinstance(data.get('stages'), list):
            raise ParseError("Declaration must be a mapping with a 'stages' list")
        stages: List[Stage] = []
        for position, stage_data in enumerate(data['stages']):
            if not isinstance(stage_data, dict):
                raise ParseError(f"stages[{position}] must be a mapping")
            base = stage_data.get('from')
            if not base or not isinstance(base, str):
                raise ParseError(f"stages[{position}] needs a 'from' base reference")
            name = str(stage_data.get('name') or position)
            instructions = []
            for text in stage_data.get('instructions', []) or []:
                if not isinstance(text, str):
                    raise ParseError(f"stages[{position}]: instructions must be strings")
                instructions.append(self.parse_instruction(text))
            stages.append(Stage(name=name, base=base, instructions=tuple(instructions)))
        return stages

    def parse_dockerfile(self, file_path: str) -> List[Stage]:
        with open(file_path, 'r', encoding='utf-8') as f:
            return self.parse_dockerfile_text(f.read())

    def parse_dockerfile_text(self, text: str) -> List[Stage]:
        stages: List[Stage] = []
        current: Optional[Tuple[str, str]] = None
        instructions: List[Instruction] = []

        for line_no, logical in self._logical_lines(text):
            keyword = logical.split(None, 1)[0].upper()
            if keyword == 'FROM':
                match = FROM_RE.match(logical)
                if not match:
                    raise ParseError(f"Malformed FROM: {logical}", line_no)
                if current is not None:
                    stages.append(Stage(current[0], current[1], tuple(instructions)))
                base, alias = match.group(1), match.group(2)
                current = (alias or str(len(stages)), base)
                instructions = []
                continue
            if current is None:
                raise ParseError(f"{keyword} before the first FROM is not supported", line_no)
            try:
                instructions.append(self.parse_instruction(logical))
            except ParseError as e:
                raise ParseError(str(e), line_no) from e

        if current is None:
            raise ParseError("Dockerfile has no FROM instruction")
        stages.append(Stage(current[0], current[1], tuple(instructions)))
        return stages

    def parse_instruction(self, text: str) -> Instruction:
        text = text.strip()
        if not text:
            raise ParseError("Empty instruction")
        keyword = text.split(None, 1)[0].upper()
        if keyword not in KNOWN_KEYWORDS:
            raise ParseError(f"Unknown instruction '{keyword}'")
        sources: Tuple[str, ...] = ()
        if keyword in ('COPY', 'ADD'):
            sources = tuple(self._from_flags(text))
        return Instruction(keyword=keyword, text=text, sources=sources)

    @staticmethod
    def _from_flags(text: str) -> List[str]:
        try:
            words = shlex.split(text)
        except ValueError:
            words = text.split()
        refs: List[str] = []
        for word in words[1:]:
            if not word.startswith('--'):
                break
            match = FROM_FLAG_RE.match(word)
            if match:
                if not match.group(1):
                    raise ParseError(f"Empty --from= in: {text}")
                refs.append(match.group(1))
        return refs

    @staticmethod
    def _logical_lines(text: str):
        """Yield (first line number, joined line) with comments and continuations handled"""
        buffer: List[str] = []
        start = 0
        for line_no, raw in enumerate(text.splitlines(), 1):
            stripped = raw.strip()
            if not buffer and (not stripped or stripped.startswith('#')):
                continue
            if buffer and stripped.startswith('#'):
                continue
            if not buffer:
                start = line_no
            if stripped.endswith('\\'):
                buffer.append(stripped[:-1].rstrip())
                continue
            buffer.append(stripped)
            yield start, ' '.join(part for part in buffer if part)
            buffer = []
        if buffer:
            yield start, ' '.join(part for part in buffer if part)
