"""Storage topology, staged root and root swap."""
