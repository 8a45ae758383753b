"""
Lineage-tracked artifact pipeline:
workspace snapshot -> intent mapping -> safe diff plan -> patch run -> PR bundle.
"""
