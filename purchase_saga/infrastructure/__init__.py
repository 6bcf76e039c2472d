"""In-process implementations of the storage interfaces."""
