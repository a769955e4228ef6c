"""In-process notifications and the live event hub."""
