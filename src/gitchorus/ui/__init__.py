"""CLI layer: argparse router and plain-text renderer."""

from gitchorus.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIRenderer", "create_renderer"]
