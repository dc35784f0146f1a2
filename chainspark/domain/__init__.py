"""
Domain Layer

Pure chain rules, document transforms and the persisted record codec.
Nothing in here performs I/O.
"""
