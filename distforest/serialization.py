"""JSON round trip for forests.

Floats are written with ``repr`` precision by the json module, so a loaded
forest reproduces the original predictions exactly.
"""
from __future__ import annotations

from dataclasses import asdict, fields
import json
from pathlib import Path
from typing import Any

import numpy as np

from distforest.config import ControlParams, ForestParams, Method, SplitParams
from distforest.data_structures import Forest, Tree, TreeNode
from distforest.observations import ObservationSet

FORMAT_VERSION = 1


def _array_or_none(values: Any, dtype: type = np.float64) -> np.ndarray | None:
    if values is None:
        return None
    return np.asarray(values, dtype=dtype)


def _list_or_none(values: np.ndarray | None) -> list | None:
    return None if values is None else values.tolist()


def _node_to_dict(node: TreeNode) -> dict:
    out = {f.name: getattr(node, f.name) for f in fields(TreeNode)}
    out["rows"] = _list_or_none(node.rows)
    for key in ("left_categories", "right_categories"):
        if out[key] is not None:
            out[key] = list(out[key])
    return out


def _node_from_dict(data: dict) -> TreeNode:
    data = dict(data)
    data["rows"] = _array_or_none(data["rows"], np.int64)
    for key in ("left_categories", "right_categories"):
        if data[key] is not None:
            data[key] = tuple(int(c) for c in data[key])
    return TreeNode(**data)


def _tree_to_dict(tree: Tree) -> dict:
    return {
        "nodes": [_node_to_dict(node) for node in tree.nodes],
        "n_features": tree.n_features,
        "seed": tree.seed,
        "n_rows": tree.n_rows,
        "sample_rows": _list_or_none(tree.sample_rows),
        "oob_rows": _list_or_none(tree.oob_rows),
        "importance": tree.importance.tolist(),
        "reduced": tree.reduced,
    }


def _tree_from_dict(data: dict) -> Tree:
    return Tree(
        nodes=[_node_from_dict(node) for node in data["nodes"]],
        n_features=int(data["n_features"]),
        seed=int(data["seed"]),
        n_rows=int(data["n_rows"]),
        sample_rows=_array_or_none(data["sample_rows"], np.int64),
        oob_rows=_array_or_none(data["oob_rows"], np.int64),
        importance=np.asarray(data["importance"], dtype=np.float64),
        reduced=bool(data["reduced"]),
    )


def _params_to_dict(params: ForestParams | None) -> dict | None:
    if params is None:
        return None
    out = asdict(params)
    out["method"] = params.method.value
    return out


def _params_from_dict(data: dict | None) -> ForestParams | None:
    if data is None:
        return None
    data = dict(data)
    data["control"] = ControlParams(**data["control"])
    data["split"] = SplitParams(**data["split"])
    return ForestParams(**data)


def _data_to_dict(data: ObservationSet | None) -> dict | None:
    if data is None:
        return None
    return {
        "X": data.X.tolist(),
        "y": data.y.tolist(),
        "exposure": data.exposure.tolist(),
        "weights": data.weights.tolist(),
        "categorical": list(data.categorical),
        "feature_names": list(data.feature_names),
    }


def _data_from_dict(data: dict | None) -> ObservationSet | None:
    if data is None:
        return None
    arrays = {}
    for key in ("X", "y", "exposure", "weights"):
        a = np.asarray(data[key], dtype=np.float64)
        a.setflags(write=False)
        arrays[key] = a
    return ObservationSet(
        categorical=tuple(int(c) for c in data["categorical"]),
        feature_names=tuple(data["feature_names"]),
        **arrays,
    )


def forest_to_dict(forest: Forest) -> dict:
    return {
        "format_version": FORMAT_VERSION,
        "method": forest.method.value,
        "n_features": forest.n_features,
        "feature_names": list(forest.feature_names),
        "categorical": list(forest.categorical),
        "n_classes": forest.n_classes,
        "oob_error": forest.oob_error.tolist(),
        "params": _params_to_dict(forest.params),
        "trees": [_tree_to_dict(tree) for tree in forest.trees],
        "data": _data_to_dict(forest.data),
    }


def forest_from_dict(data: dict) -> Forest:
    version = data.get("format_version")
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported forest format version: {version}")

    return Forest(
        trees=[_tree_from_dict(tree) for tree in data["trees"]],
        method=Method.parse(data["method"]),
        n_features=int(data["n_features"]),
        feature_names=tuple(data["feature_names"]),
        categorical=tuple(int(c) for c in data["categorical"]),
        n_classes=int(data["n_classes"]),
        oob_error=np.asarray(data["oob_error"], dtype=np.float64),
        params=_params_from_dict(data["params"]),
        data=_data_from_dict(data["data"]),
    )


def save_forest(forest: Forest, path: str | Path) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(forest_to_dict(forest), fh)


def load_forest(path: str | Path) -> Forest:
    with open(path, "r", encoding="utf-8") as fh:
        return forest_from_dict(json.load(fh))
