"""LikeMe wellness backend: anamnesis catalog, scoring, imports and payments.

Question texts and answers live in the relational store; scores are
computed on read by the ``scoring`` package and cached per process.
"""
