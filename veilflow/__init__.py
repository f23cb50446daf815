"""
VeilFlow - Policy-Based Row and Column Access Framework

A framework for governing table reads with support for:
- Role hierarchies and effective role resolution
- Tag-based column masking policies
- Row access policies backed by mapping tables
- Decision auditing and evaluation statistics
- Spark DataFrame enforcement
"""

__version__ = "0.1.0"
