"""Client module - Upload queue, backend API client and local state."""
