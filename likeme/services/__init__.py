"""Service layer for anamnesis questions, answers, scores, imports and payments.

Each module exposes plain async functions over an ``AsyncSession`` and its
own exception types, mapped to HTTP errors by the API.
"""
