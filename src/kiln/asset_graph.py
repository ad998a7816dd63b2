"""Read-only access to the build metadata persisted by the engine.

Only the parts ``kiln clean`` needs are modelled: which outputs exist, which
package owns them, whether they were written into the source tree and whether
a previous build actually wrote them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from kiln.errors import KilnError
from kiln.packages import canonicalize_name

ASSET_GRAPH_VERSION = 1


class AssetGraphError(KilnError):
    """The persisted asset graph could not be read."""


@dataclass(frozen=True, slots=True)
class GeneratedAsset:
    package: str
    path: str
    generated_to_source: bool
    was_output: bool


@dataclass(frozen=True, slots=True)
class AssetGraph:
    outputs: tuple[GeneratedAsset, ...]

    @classmethod
    def deserialize(cls, data: bytes) -> AssetGraph:
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AssetGraphError(f"Asset graph is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise AssetGraphError("Asset graph must be a JSON object.")
        version = raw.get("version")
        if version != ASSET_GRAPH_VERSION:
            raise AssetGraphError(
                f"Unsupported asset graph version {version!r} (expected {ASSET_GRAPH_VERSION})."
            )

        nodes = raw.get("outputs", [])
        if not isinstance(nodes, list):
            raise AssetGraphError("Asset graph `outputs` must be a list.")

        outputs: list[GeneratedAsset] = []
        for i, node in enumerate(nodes):
            try:
                outputs.append(
                    GeneratedAsset(
                        package=str(node["package"]),
                        path=str(node["path"]),
                        generated_to_source=bool(node.get("generated_to_source", False)),
                        was_output=bool(node.get("was_output", False)),
                    )
                )
            except (KeyError, TypeError, AttributeError) as e:
                raise AssetGraphError(f"Malformed asset graph output #{i}: {e!r}") from e
        return cls(outputs=tuple(outputs))

    def outputs_for(self, package: str) -> list[GeneratedAsset]:
        name = canonicalize_name(package)
        return [a for a in self.outputs if canonicalize_name(a.package) == name]
