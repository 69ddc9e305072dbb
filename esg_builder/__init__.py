"""ESG framework builder: pillar/lever/variable trees, surveys and scoring."""

__version__ = "0.1.0"
