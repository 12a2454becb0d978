"""
RSS Feed Mail - Read RSS feeds in Gmail.

Polls a taxonomy of RSS/Atom feeds and emails every new item to a single
mailbox, labelled according to the group hierarchy it belongs to.
"""

__version__ = "1.0.0"
