"""msgsync.api - platform connectors for Gmail and Google Chat."""
