"""Protocol core: descriptors, inspection, commands and watchers."""
