"""
Core modules: frame mailbox, tracker base class and tracker pool
"""
