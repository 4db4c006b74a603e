"""
Workflow graphs: adjacency and ordering (``model``), structural validation
(``validator``) and the binding/template expression language
(``expressions``).
"""
