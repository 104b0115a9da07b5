"""
Test suite for Invoice Catalog Mapper.
"""
