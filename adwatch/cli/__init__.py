"""
AdWatch CLI
"""
