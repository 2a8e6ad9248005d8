"""msgsync.storage - SQLite persistence and attachment blob storage."""
