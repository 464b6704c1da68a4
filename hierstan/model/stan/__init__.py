# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan integration for hierstan.

This submodule covers everything between a normalized model specification and
an executable Stan program:

**Key Components:**
    - Program Generation: :py:mod:`~hierstan.model.stan.program` writes the Stan
      program and its data from a :py:class:`~hierstan.model.spec.ModelSpec`
    - Compilation Management: :py:mod:`~hierstan.model.stan.compiler` compiles
      programs under a content-derived name and reuses existing executables
    - Engine Interface: :py:mod:`~hierstan.model.stan.engine` defines the contract
      with the engine running the programs, backed by CmdStanPy by default
"""
