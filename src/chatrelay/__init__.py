"""Tool-augmented chat relay and resumable media job poller."""
