"""
Node executors.

Each executor handles one family of node types. ``build_default_registry``
in :mod:`marketflow.executors.builtin` wires the built-in set to a bundle of
collaborators.
"""
