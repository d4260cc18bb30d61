"""Report generation and scheduled report delivery."""
