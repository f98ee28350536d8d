"""Allow ``python -m fedora_kernel_builder``."""

from fedora_kernel_builder.cli import app

app()
