"""
Client sync application package.
"""
