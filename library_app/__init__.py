"""Library App - Loan Desk Package

This package contains the checkout/return service modules:
- Loan ledger (ledger.py)
- Book catalog and student registry (catalog.py, students.py)
- API endpoints (api.py)
- CLI interface (cli.py)
- Database layer and repositories (database.py, repositories.py)
"""
