"""Document store REST client and typed-value codec."""
