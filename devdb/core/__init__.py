"""Provisioning components: engines, manifests, snapshots, volumes, backup import and the reconciler."""
