"""Discovery, product-page extraction and the crawl run."""
