"""
Query executors for the backends a join can reach.

Executors live in their own modules (``fedjoin.queries.jdbc``,
``fedjoin.queries.mysql``, ``fedjoin.queries.search_engine``) and are
created through ``fedjoin.queries.factory``.
"""
