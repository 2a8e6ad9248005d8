"""msgsync.sync - grouping, identity resolution, merging and orchestration."""
