"""
Downtown: delineate historical downtown cores from point-of-interest density.

For each town the pipeline keeps the POIs inside the town's main boundary
part, estimates their kernel density over a hex grid, keeps the cells in the
top quarter of the town's density range, dissolves them into blobs, picks
the blob with the best size × intensity score, and buffers and smooths it
into a downtown polygon.
"""

__version__ = "0.1.0"
