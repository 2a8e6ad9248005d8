"""
msgsync - Email and chat message synchronization

Synchronizes Gmail threads and Google Chat spaces into a local store,
grouping messages by platform thread, resolving participant identities
and merging incremental updates without losing attachments.
"""

__version__ = "0.1.0"
