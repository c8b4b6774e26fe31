"""Allow ``python -m token_pipeline``."""

from .main import run


if __name__ == "__main__":
    run()
