"""HTTP fetching and HTML text extraction."""
