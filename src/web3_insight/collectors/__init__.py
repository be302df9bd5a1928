"""Feed and page collectors that turn remote content into stored records."""
