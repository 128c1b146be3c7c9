"""
Manifest schema - package identity and build configuration from Cargo.toml.

The manifest is read once per build from Cargo.toml at the source root.
Program-specific fields live in a namespaced table under package metadata:

    [package]
    name = "my-program"
    version = "0.1.0"

    [package.metadata.entropy-program]
    docker-image = "peg997/build-entropy-programs:version0.1"
    configuration-schema = "..."
    auxiliary-data-schema = "..."
    oracle-data-pointer = "..."
    version-number = 1

Every program field is optional. Absent fields take empty/zero defaults and
are not an error; fields of the wrong type are.
"""

import datetime
import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from progmeta.errors import (
    MetadataMissingRootPackage,
    MetadataParseFailure,
    SerializationFailure,
)


MANIFEST_FILENAME = "Cargo.toml"
DEFAULT_METADATA_NAMESPACE = "entropy-program"

# TOML key -> ManifestInfo attribute for string fields
_STRING_FIELDS = {
    "configuration-schema": "configuration_schema",
    "auxiliary-data-schema": "auxiliary_data_schema",
    "oracle-data-pointer": "oracle_data_pointer",
}


def _encode_toml_value(value: Any) -> str:
    """JSON fallback for TOML date, time and datetime values."""
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass(frozen=True)
class ManifestInfo:
    """
    Validated manifest data for one build.

    Attributes:
        name: Root package name
        version: Package version string ("" if not declared)
        build_image: Build image override passed to the build tool, if any
        configuration_schema: Program configuration schema
        auxiliary_data_schema: Program auxiliary data schema
        oracle_data_pointer: Pointer to oracle data the program consumes
        version_number: Program interface version (0-255)
        package: The raw [package] table, kept for the stored record
    """
    name: str
    version: str = ""
    build_image: Optional[str] = None
    configuration_schema: str = ""
    auxiliary_data_schema: str = ""
    oracle_data_pointer: str = ""
    version_number: int = 0
    package: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def program_metadata(self) -> dict[str, Any]:
        """The namespaced program fields, normalized."""
        return {
            "build_image": self.build_image,
            "configuration_schema": self.configuration_schema,
            "auxiliary_data_schema": self.auxiliary_data_schema,
            "oracle_data_pointer": self.oracle_data_pointer,
            "version_number": self.version_number,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for the stored program record."""
        return {
            "name": self.name,
            "version": self.version,
            "program": self.program_metadata(),
            "package": self.package,
        }

    def to_json(self) -> bytes:
        """
        Encode as the JSON stored under the program hash.

        TOML dates and times in the package table are stored as ISO 8601 strings.

        Raises:
            SerializationFailure: If the package table holds values JSON cannot encode
        """
        try:
            return json.dumps(
                self.to_dict(),
                sort_keys=True,
                default=_encode_toml_value,
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationFailure(f"Cannot encode manifest as JSON: {e}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestInfo":
        """Deserialize from a stored program record."""
        program = data.get("program", {})
        return cls(
            name=data["name"],
            version=data.get("version", ""),
            build_image=program.get("build_image"),
            configuration_schema=program.get("configuration_schema", ""),
            auxiliary_data_schema=program.get("auxiliary_data_schema", ""),
            oracle_data_pointer=program.get("oracle_data_pointer", ""),
            version_number=program.get("version_number", 0),
            package=data.get("package", {}),
        )

    @classmethod
    def from_json(cls, raw: bytes) -> "ManifestInfo":
        return cls.from_dict(json.loads(raw))

    @classmethod
    def from_toml(
        cls,
        document: dict[str, Any],
        namespace: str = DEFAULT_METADATA_NAMESPACE,
    ) -> "ManifestInfo":
        """
        Validate a parsed Cargo.toml document.

        Args:
            document: Parsed TOML document
            namespace: Table name under [package.metadata] holding program fields

        Returns:
            ManifestInfo

        Raises:
            MetadataMissingRootPackage: If there is no [package] table with a name
            MetadataParseFailure: If a field has the wrong type
        """
        package = document.get("package")
        if not isinstance(package, dict) or "name" not in package:
            raise MetadataMissingRootPackage("Cannot find root package in Cargo.toml")

        name = package["name"]
        if not isinstance(name, str) or not name:
            raise MetadataParseFailure("package.name must be a non-empty string")

        # version may be inherited from a workspace ({workspace = true})
        version = package.get("version", "")
        if not isinstance(version, str):
            version = ""

        metadata = package.get("metadata", {})
        if not isinstance(metadata, dict):
            raise MetadataParseFailure("package.metadata must be a table")
        program = metadata.get(namespace, {})
        if not isinstance(program, dict):
            raise MetadataParseFailure(f"package.metadata.{namespace} must be a table")

        build_image = program.get("docker-image")
        if build_image is not None and not isinstance(build_image, str):
            raise MetadataParseFailure(f"package.metadata.{namespace}.docker-image must be a string")

        strings: dict[str, str] = {}
        for key, attr in _STRING_FIELDS.items():
            value = program.get(key, "")
            if not isinstance(value, str):
                raise MetadataParseFailure(f"package.metadata.{namespace}.{key} must be a string")
            strings[attr] = value

        version_number = program.get("version-number", 0)
        # bool is an int subclass; TOML true is not a version number
        if isinstance(version_number, bool) or not isinstance(version_number, int):
            raise MetadataParseFailure(f"package.metadata.{namespace}.version-number must be an integer")
        if not 0 <= version_number <= 255:
            raise MetadataParseFailure(
                f"package.metadata.{namespace}.version-number must be between 0 and 255"
            )

        return cls(
            name=name,
            version=version,
            build_image=build_image or None,
            version_number=version_number,
            package=package,
            **strings,
        )


def read_manifest(
    source_dir: Path,
    namespace: str = DEFAULT_METADATA_NAMESPACE,
) -> ManifestInfo:
    """
    Read and validate Cargo.toml at the root of a fetched source tree.

    Raises:
        MetadataMissingRootPackage: If Cargo.toml is missing or has no root package
        MetadataParseFailure: If Cargo.toml is not valid TOML or fields are mistyped
    """
    manifest_path = source_dir / MANIFEST_FILENAME
    if not manifest_path.is_file():
        raise MetadataMissingRootPackage(f"No {MANIFEST_FILENAME} at the source root")

    try:
        with open(manifest_path, "rb") as f:
            document = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise MetadataParseFailure(f"Error reading {MANIFEST_FILENAME}: {e}")
    except UnicodeDecodeError as e:
        raise MetadataParseFailure(f"{MANIFEST_FILENAME} is not valid UTF-8: {e}")

    return ManifestInfo.from_toml(document, namespace)
