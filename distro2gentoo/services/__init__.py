"""Gentoo release download and verification."""
