"""DropGo service applications (``apps.<service>.app``)."""
