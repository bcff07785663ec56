"""Library App - helpers shared by the API and CLI:
- Input validators (validators.py)
- CLI output formatting (ui_helpers.py)
"""
