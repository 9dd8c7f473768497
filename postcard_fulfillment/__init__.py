"""Campaign fulfillment pipeline: print-ready assets, batched Stannp dispatch and mailpiece tracking."""

__version__ = "0.4.0"
