"""HTTP surface (FastAPI) over one ChainSparkClient."""
