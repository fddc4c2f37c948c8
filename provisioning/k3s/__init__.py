# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Single-node k3s cluster: the host, the cluster services and their secrets.

Run as: python -m provisioning.k3s.host -v
"""
