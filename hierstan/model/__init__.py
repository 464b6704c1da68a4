# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model construction, compilation and execution for hierstan.

This module holds the complete pipeline behind :py:func:`hierstan.fit_model`.
Its stages map onto submodules as follows:

    1. **Specification**: :py:mod:`~hierstan.model.formula`,
       :py:mod:`~hierstan.model.families`, :py:mod:`~hierstan.model.priors`,
       :py:mod:`~hierstan.model.autocor` and :py:mod:`~hierstan.model.stanvars`
       describe the pieces of a model; :py:mod:`~hierstan.model.spec` validates
       them and combines them into a single
       :py:class:`~hierstan.model.spec.ModelSpec`.
    2. **Program generation**: :py:mod:`hierstan.model.stan.program` produces the
       Stan program and its data.
    3. **Compilation**: :py:mod:`hierstan.model.stan.compiler` builds executables
       through an :py:class:`~hierstan.model.stan.engine.InferenceEngine`.
    4. **Execution**: :py:mod:`~hierstan.model.dispatch` runs the chains and
       :py:mod:`hierstan.model.results` merges and renames their draws.
    5. **Persistence**: :py:mod:`~hierstan.model.cache` stores and loads fits.

Every stage produces immutable values, so a stage can be rerun or skipped (for
example when an existing fit is reused) without affecting the others.
"""
