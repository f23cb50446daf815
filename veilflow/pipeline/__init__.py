"""Spark integration for the access module."""

from .secure_reader import SecureReader, register_schema

__all__ = ['SecureReader', 'register_schema']
