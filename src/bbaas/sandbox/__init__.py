"""Host-side orchestration: sandbox lifecycle, output demultiplexing, event parsing."""
