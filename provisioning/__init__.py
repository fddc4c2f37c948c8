# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Documented machines configuration and tools for that.

The goal is to keep configuration in code under version control.
It serves as documentation for what is installed and configured.
Nothing may be changed on the machines without a provisioning script.

Provisioning is the process of creating and setting up IT infrastructure.
See: https://www.redhat.com/en/topics/automation/what-is-provisioning

Every action is formulated in terms of a command.
It is desirable that commands be written in the most raw form,
so that it is clear what is being run and it is easy to copy.

Commands must be idempotent.
The second run must not "accumulate" changes.
Running it multiple times must be safe.

Provisioning scripts are intended to be run manually by someone who has enough
permissions to do so. If a script fails, the human who runs it must
investigate the problem. If it succeeds, it's still recommended to examine
the script output and what the script actually did.
"""
