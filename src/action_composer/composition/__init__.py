"""Composition trees: combinators and lowering to primitives."""
