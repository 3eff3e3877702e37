"""
Services Module

Key Submodules:
- kubernetes: Pod Store, Connector Pod Controller and the cluster write path
- registry: Registry Manager, registry backends (ECR, local) and the containerd RuntimeClient
"""
