"""
HTTP surface of the join engine.
"""
