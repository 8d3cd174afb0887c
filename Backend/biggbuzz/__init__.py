"""Bigg Buzz storefront API."""
