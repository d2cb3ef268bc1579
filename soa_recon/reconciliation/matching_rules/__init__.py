"""
Matching Rules Module
"""

from .soa_rules import SOAMatchingRules, normalize_doc_number

__all__ = ["SOAMatchingRules", "normalize_doc_number"]
