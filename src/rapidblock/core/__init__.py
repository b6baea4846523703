"""Core domain package for rapidblock.

Core contains the blocklist models, the reconciliation algorithm, and the
Link header parser without any SQL or HTTP specific code, keeping the
business logic portable across storage backends.
"""
