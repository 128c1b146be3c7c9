"""Tests for progmeta schemas.

Tests cover:
- ManifestInfo validation from Cargo.toml
- read_manifest error mapping
- BuildEvent wire encoding
- ProgramRecord invariants
"""

import json
import tomllib

import pytest

from progmeta.errors import (
    MetadataMissingRootPackage,
    MetadataParseFailure,
    SerializationFailure,
)
from progmeta.schemas import (
    ArchiveSource,
    BuildFailure,
    BuildSuccess,
    GitSource,
    HASH_SIZE,
    ManifestInfo,
    ProgramRecord,
    StdErrChunk,
    StdOutChunk,
    event_from_dict,
    event_from_json,
    event_to_json,
    read_manifest,
)

from progmeta.responder import Responder

from conftest import cargo_toml, make_tar, program_tree


# =============================================================================
# MANIFEST
# =============================================================================


class TestManifestFromToml:
    """ManifestInfo.from_toml validation."""

    def test_package_only(self):
        """Without program metadata every program field takes its default."""
        info = ManifestInfo.from_toml(tomllib.loads(cargo_toml("adder", "1.2.3")))
        assert info.name == "adder"
        assert info.version == "1.2.3"
        assert info.build_image is None
        assert info.configuration_schema == ""
        assert info.auxiliary_data_schema == ""
        assert info.oracle_data_pointer == ""
        assert info.version_number == 0

    def test_program_metadata(self):
        """Namespaced program fields are read."""
        doc = tomllib.loads(cargo_toml("adder", program='''
            docker-image = "peg997/build-entropy-programs:version0.1"
            configuration-schema = "{\\"type\\": \\"object\\"}"
            auxiliary-data-schema = "aux"
            oracle-data-pointer = "block_number"
            version-number = 3
        '''))
        info = ManifestInfo.from_toml(doc)
        assert info.build_image == "peg997/build-entropy-programs:version0.1"
        assert info.configuration_schema == '{"type": "object"}'
        assert info.auxiliary_data_schema == "aux"
        assert info.oracle_data_pointer == "block_number"
        assert info.version_number == 3

    def test_other_namespace_ignored(self):
        """Tables for other tools are ignored."""
        doc = tomllib.loads(
            cargo_toml("adder") + '\n[package.metadata.other-tool]\ndocker-image = "nope"\n'
        )
        assert ManifestInfo.from_toml(doc).build_image is None

    def test_custom_namespace(self):
        """The metadata namespace is configurable."""
        doc = tomllib.loads(
            cargo_toml("adder") + '\n[package.metadata.my-vendor]\nversion-number = 7\n'
        )
        assert ManifestInfo.from_toml(doc, namespace="my-vendor").version_number == 7

    def test_empty_docker_image_means_default(self):
        """An empty docker-image means no override."""
        doc = tomllib.loads(cargo_toml("adder", program='docker-image = ""\n'))
        assert ManifestInfo.from_toml(doc).build_image is None

    def test_workspace_inherited_version(self):
        """An inherited version reads as empty."""
        doc = tomllib.loads('[package]\nname = "adder"\nversion.workspace = true\n')
        assert ManifestInfo.from_toml(doc).version == ""

    def test_missing_package(self):
        """A workspace-only manifest has no root package."""
        doc = tomllib.loads('[workspace]\nmembers = ["a", "b"]\n')
        with pytest.raises(MetadataMissingRootPackage):
            ManifestInfo.from_toml(doc)

    def test_missing_package_name(self):
        """A package without a name has no root package."""
        doc = tomllib.loads('[package]\nversion = "0.1.0"\n')
        with pytest.raises(MetadataMissingRootPackage):
            ManifestInfo.from_toml(doc)

    @pytest.mark.parametrize("program", [
        "docker-image = 5\n",
        "configuration-schema = [1, 2]\n",
        "oracle-data-pointer = true\n",
        'version-number = "1"\n',
        "version-number = true\n",
        "version-number = 256\n",
        "version-number = -1\n",
    ])
    def test_mistyped_fields(self, program):
        """Fields of the wrong type raise MetadataParseFailure."""
        doc = tomllib.loads(cargo_toml("adder", program=program))
        with pytest.raises(MetadataParseFailure):
            ManifestInfo.from_toml(doc)

    def test_namespace_not_a_table(self):
        """A non-table namespace raises MetadataParseFailure."""
        doc = tomllib.loads('[package]\nname = "adder"\nmetadata = { entropy-program = "x" }\n')
        with pytest.raises(MetadataParseFailure):
            ManifestInfo.from_toml(doc)


class TestReadManifest:
    """read_manifest on a source directory."""

    def test_reads_cargo_toml(self, tmp_path):
        """Cargo.toml at the root is read."""
        (tmp_path / "Cargo.toml").write_text(cargo_toml("reader"))
        assert read_manifest(tmp_path).name == "reader"

    def test_missing_file(self, tmp_path):
        """A missing Cargo.toml has no root package."""
        with pytest.raises(MetadataMissingRootPackage):
            read_manifest(tmp_path)

    def test_invalid_toml(self, tmp_path):
        """Malformed TOML raises MetadataParseFailure."""
        (tmp_path / "Cargo.toml").write_text("[package\nname = ")
        with pytest.raises(MetadataParseFailure):
            read_manifest(tmp_path)

    def test_invalid_utf8(self, tmp_path):
        """Non-UTF-8 bytes raise MetadataParseFailure."""
        (tmp_path / "Cargo.toml").write_bytes(b'[package]\nname = "\xff"\n')
        with pytest.raises(MetadataParseFailure):
            read_manifest(tmp_path)


class TestManifestJson:
    """Serialization of the stored manifest."""

    def test_round_trip(self):
        """Stored JSON loads back to an equal manifest."""
        doc = tomllib.loads(cargo_toml("adder", program='version-number = 2\noracle-data-pointer = "p"\n'))
        info = ManifestInfo.from_toml(doc)
        restored = ManifestInfo.from_json(info.to_json())
        assert restored == info
        assert restored.package["name"] == "adder"

    def test_json_is_sorted_and_parseable(self):
        """The stored JSON carries name and program fields."""
        info = ManifestInfo(name="adder", version="0.1.0")
        data = json.loads(info.to_json())
        assert data["name"] == "adder"
        assert data["program"]["version_number"] == 0

    def test_toml_dates_stored_as_iso_strings(self):
        """TOML date, time and datetime values are encoded as ISO 8601 strings."""
        doc = tomllib.loads(
            cargo_toml("adder")
            + "released = 1979-05-27T07:32:00Z\n"
            + "\n[package.metadata.release]\ndate = 2024-01-01\nat = 07:32:00\n"
        )
        data = json.loads(ManifestInfo.from_toml(doc).to_json())
        assert data["package"]["released"] == "1979-05-27T07:32:00+00:00"
        assert data["package"]["metadata"]["release"] == {"date": "2024-01-01", "at": "07:32:00"}

    def test_manifest_with_release_date_commits(self, pipeline, store):
        """A [package.metadata] date does not fail the commit stage."""
        files = program_tree()
        files["Cargo.toml"] += "\n[package.metadata.release]\ndate = 2024-01-01\n"
        success = pipeline.run(ArchiveSource(make_tar(files)), Responder())
        stored = json.loads(store.get(success.hash))
        assert stored["package"]["metadata"]["release"]["date"] == "2024-01-01"

    def test_unencodable_package_value(self):
        """Values with no JSON form raise SerializationFailure."""
        info = ManifestInfo(name="adder", package={"tags": {"a", "b"}})
        with pytest.raises(SerializationFailure):
            info.to_json()


# =============================================================================
# EVENTS
# =============================================================================


class TestBuildEvents:
    """BuildEvent wire encoding."""

    def test_chunks_are_not_terminal(self):
        """Output chunks are not terminal."""
        assert not StdOutChunk("x").terminal
        assert not StdErrChunk("x").terminal

    def test_results_are_terminal(self):
        """Success and failure are terminal."""
        assert BuildSuccess(hash=b"\x00" * 32, binary=b"", binary_filename="a.wasm").terminal
        assert BuildFailure(kind="FetchFailed").terminal

    def test_stdout_wire_form(self):
        """A stdout chunk encodes as type and text."""
        assert json.loads(event_to_json(StdOutChunk("hello\n"))) == {"type": "stdout", "text": "hello\n"}

    def test_success_wire_form(self):
        """A success encodes the hash as hex and the binary as base64."""
        event = BuildSuccess(hash=bytes(range(32)), binary=b"\x00asm", binary_filename="p.wasm")
        data = json.loads(event_to_json(event))
        assert data["type"] == "success"
        assert data["hash"] == bytes(range(32)).hex()
        assert data["binary"] == "AGFzbQ=="
        assert event_from_dict(data) == event

    def test_error_wire_form_includes_stage(self):
        """A failure keeps its stage on the wire."""
        event = BuildFailure(kind="CompilationFailed", detail="boom", stage="stream")
        assert event_from_json(event_to_json(event)) == event

    def test_error_without_stage(self):
        """A failure without a stage omits the key."""
        data = BuildFailure(kind="InternalError", detail="x").to_dict()
        assert "stage" not in data

    def test_event_is_one_line(self):
        """Encoded events never span lines."""
        assert "\n" not in event_to_json(StdOutChunk("a\nb\n"))

    def test_unknown_type(self):
        """An unknown event type is rejected."""
        with pytest.raises(ValueError, match="Unknown build event type"):
            event_from_dict({"type": "progress"})

    def test_missing_field(self):
        """A missing field is rejected."""
        with pytest.raises(ValueError, match="missing field"):
            event_from_dict({"type": "success", "hash": "00"})

    def test_success_repr_hides_binary(self):
        """repr shows the binary size, not its bytes."""
        event = BuildSuccess(hash=b"\x01" * 32, binary=b"x" * 1000, binary_filename="p.wasm")
        assert "1000 bytes" in repr(event)


# =============================================================================
# SOURCES & RECORDS
# =============================================================================


def test_sources_are_immutable():
    """Sources are frozen."""
    source = GitSource(url="https://example.com/repo.git")
    with pytest.raises(AttributeError):
        source.url = "other"  # type: ignore[misc]


def test_archive_source_describe():
    """Archive sources describe their size."""
    assert ArchiveSource(data=b"1234").describe() == "archive:4 bytes"


def test_program_record_requires_full_hash():
    """A short hash is rejected."""
    with pytest.raises(ValueError):
        ProgramRecord(hash=b"\x00" * 31, manifest_json=b"{}")


def test_program_record_manifest():
    """A record decodes its manifest and hex hash."""
    info = ManifestInfo(name="adder")
    record = ProgramRecord(hash=b"\x02" * HASH_SIZE, manifest_json=info.to_json())
    assert record.manifest().name == "adder"
    assert record.to_dict()["hash"] == "02" * HASH_SIZE
