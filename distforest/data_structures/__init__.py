"""
Data structures for distribution-aware forests.

Trees keep their nodes in a flat arena addressed by index, forests keep their
trees in training order next to the OOB error curve.
"""
from distforest.data_structures.forest import Forest, VariableImportance
from distforest.data_structures.tree import Tree, TreeNode

__all__ = ["Forest", "Tree", "TreeNode", "VariableImportance"]
