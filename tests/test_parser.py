"""Tests for parser.py: Dockerfile and YAML/JSON stage declarations."""

import json

import pytest

from conftest import MULTISTAGE_DOCKERFILE, PUBLISHED_BASE_DOCKERFILE
from errors import ParseError
from parser import DeclarationParser


@pytest.fixture
def parser():
    return DeclarationParser()


class TestDockerfile:
    def test_multistage(self, parser):
        stages = parser.parse_dockerfile_text(MULTISTAGE_DOCKERFILE)
        assert [s.name for s in stages] == ["stage1", "stage2", "2"]
        assert [s.base for s in stages] == ["debian", "debian", "debian"]
        final = stages[2]
        assert [i.keyword for i in final.instructions] == ["ENV", "COPY", "COPY", "RUN"]
        assert final.instructions[1].sources == ("stage1",)
        assert final.instructions[2].sources == ("stage2",)
        assert final.instructions[0].sources == ()

    def test_external_image_base(self, parser):
        stages = parser.parse_dockerfile_text(PUBLISHED_BASE_DOCKERFILE)
        assert stages[1].base == "tmp/multistage/01:stage_stage1"
        assert stages[1].name == "stage2"

    def test_literal_text_preserved(self, parser):
        stages = parser.parse_dockerfile_text(MULTISTAGE_DOCKERFILE)
        assert stages[0].instructions[1].text == 'RUN touch /tmp/stage1.txt && echo -e "\\e[91m1: not cached\\e[0m"'

    def test_continuations_and_comments(self, parser):
        text = (
            "# syntax comment\n"
            "FROM debian AS build\n"
            "RUN apt-get update && \\\n"
            "    # comment inside continuation\n"
            "    apt-get install -y curl\n"
            "\n"
            "from alpine as runtime\n"
            "copy --from=build /usr/bin/curl /usr/bin/curl\n"
        )
        stages = parser.parse_dockerfile_text(text)
        assert stages[0].instructions[0].text == "RUN apt-get update && apt-get install -y curl"
        assert stages[1].name == "runtime"
        assert stages[1].instructions[0].keyword == "COPY"
        assert stages[1].instructions[0].sources == ("build",)

    def test_platform_flag(self, parser):
        stages = parser.parse_dockerfile_text("FROM --platform=linux/amd64 debian:12 AS base\n")
        assert stages[0].base == "debian:12"
        assert stages[0].name == "base"

    def test_copy_with_other_flags(self, parser):
        stages = parser.parse_dockerfile_text("FROM debian\nCOPY --chown=app --from=0 /a /b\nCOPY ./src /src\n")
        assert stages[0].instructions[0].sources == ("0",)
        assert stages[0].instructions[1].sources == ()

    def test_instruction_before_from(self, parser):
        with pytest.raises(ParseError) as exc:
            parser.parse_dockerfile_text("RUN echo\nFROM debian\n")
        assert exc.value.line == 1

    def test_no_from(self, parser):
        with pytest.raises(ParseError):
            parser.parse_dockerfile_text("# nothing here\n")

    def test_malformed_from(self, parser):
        with pytest.raises(ParseError):
            parser.parse_dockerfile_text("FROM debian AS\n")

    def test_unknown_instruction(self, parser):
        with pytest.raises(ParseError) as exc:
            parser.parse_dockerfile_text("FROM debian\nFROBNICATE now\n")
        assert exc.value.line == 2

    def test_empty_from_flag(self, parser):
        with pytest.raises(ParseError):
            parser.parse_dockerfile_text("FROM debian\nCOPY --from= /a /b\n")

    def test_parse_file_dispatch(self, parser, tmp_path):
        dockerfile = tmp_path / "Dockerfile"
        dockerfile.write_text(MULTISTAGE_DOCKERFILE)
        assert len(parser.parse_file(str(dockerfile))) == 3


class TestDeclaration:
    DATA = {
        "stages": [
            {"name": "stage1", "from": "debian", "instructions": ["ENV LAYER=stage1", "RUN touch /tmp/a"]},
            {"from": "debian", "instructions": ["COPY --from=stage1 /tmp/* /tmp/"]},
        ]
    }

    def test_parse_dict(self, parser):
        stages = parser.parse_dict(self.DATA)
        assert stages[0].name == "stage1"
        assert stages[1].name == "1"
        assert stages[1].instructions[0].sources == ("stage1",)

    def test_yaml_file(self, parser, tmp_path):
        path = tmp_path / "build.yaml"
        path.write_text(
            "stages:\n"
            "  - name: stage1\n"
            "    from: debian\n"
            "    instructions:\n"
            "      - RUN touch /tmp/stage1.txt\n"
        )
        stages = parser.parse_file(str(path))
        assert stages[0].instructions[0].text == "RUN touch /tmp/stage1.txt"

    def test_json_file(self, parser, tmp_path):
        path = tmp_path / "build.json"
        path.write_text(json.dumps(self.DATA))
        assert [s.name for s in parser.parse_file(str(path))] == ["stage1", "1"]

    def test_invalid_yaml(self, parser, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("stages: [unclosed\n")
        with pytest.raises(ParseError):
            parser.parse_file(str(path))

    @pytest.mark.parametrize("data", [
        [],
        {"stages": "nope"},
        {"stages": [{"name": "x"}]},
        {"stages": [{"from": "debian", "instructions": [42]}]},
        {"stages": ["FROM debian"]},
    ])
    def test_invalid_declarations(self, parser, data):
        with pytest.raises(ParseError):
            parser.parse_dict(data)
