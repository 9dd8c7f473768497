from postcard_fulfillment.logger import configure_logging
from postcard_fulfillment.server import serve
from postcard_fulfillment.settings import load_settings

# Configure logging level from environment
configure_logging()


if __name__ == "__main__":
    serve(load_settings())
