"""Import job lifecycle and the drivers that move jobs through the pipeline.

`state` persists job records, `driver` runs offset-based chunks (caller
iterated or self-driving) and `stream` runs a backpressured streaming import.
"""
