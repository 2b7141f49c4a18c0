"""In-sandbox worker: runs one job against a headless browser and reports on stdout."""
