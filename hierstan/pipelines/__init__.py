# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Command line pipelines built on :py:func:`hierstan.fit_model`."""
