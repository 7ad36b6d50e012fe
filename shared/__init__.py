"""Shared configuration, logging and persistence for the flow engine service and worker."""
