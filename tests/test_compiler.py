# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for compilation and executable reuse."""

import os.path
import pickle

import pytest

from hierstan.exceptions import BuildError, ConfigurationError
from hierstan.model.stan.compiler import CompiledModel, build_model, reload_model
from hierstan.utils import content_hash

from conftest import FakeEngine

SOURCE = "parameters {\n  real mu;\n}\nmodel {\n  mu ~ std_normal();\n}\n"


def test_identical_programs_reuse_the_executable(engine, output_dir):
    first = build_model(SOURCE, engine, output_dir=output_dir)
    second = build_model(SOURCE, engine, output_dir=output_dir)
    assert first == second
    assert first.stan_file == second.stan_file
    assert [handle.reused for handle in engine.compiled] == [False, True]
    assert os.path.basename(first.stan_file) == f"model_{first.identity[:12]}.stan"


def test_identity_depends_on_source_and_options(engine, output_dir):
    base = build_model(SOURCE, engine, output_dir=output_dir)
    other_source = build_model(SOURCE + "\n", engine, output_dir=output_dir)
    other_options = build_model(
        SOURCE,
        engine,
        options={"cpp_options": {"STAN_THREADS": True}},
        output_dir=output_dir,
    )
    assert len({base.identity, other_source.identity, other_options.identity}) == 3


def test_model_name_and_force_compile_do_not_change_identity(engine, output_dir):
    base = build_model(SOURCE, engine, output_dir=output_dir)
    named = build_model(
        SOURCE,
        engine,
        options={"model_name": "epilepsy", "force_compile": True},
        output_dir=output_dir,
    )
    assert base == named
    assert os.path.basename(named.exe_file).startswith("epilepsy_")
    assert not engine.compiled[-1].reused


def test_identity_is_a_content_hash(engine, output_dir):
    compiled = build_model(SOURCE, engine, output_dir=output_dir)
    assert compiled.identity == content_hash(
        SOURCE,
        {"stanc_options": {"O1": True}, "cpp_options": {}, "user_header": None},
    )


def test_silent_compilation_captures_diagnostics(engine, output_dir):
    compiled = build_model(SOURCE, engine, output_dir=output_dir)
    assert any("compiling" in message for message in compiled.diagnostics)


def test_compiler_failure(output_dir):
    with pytest.raises(BuildError) as excinfo:
        build_model(SOURCE, FakeEngine(fail_compile=True), output_dir=output_dir)
    assert "Syntax error" in excinfo.value.diagnostics


def test_unknown_builder_option(engine, output_dir):
    with pytest.raises(ConfigurationError):
        build_model(SOURCE, engine, options={"optimize": 3}, output_dir=output_dir)


def test_save_dso_is_deprecated(engine):
    with pytest.warns(FutureWarning, match="save_dso"):
        compiled = build_model(SOURCE, engine, save_dso=False)
    assert os.path.exists(compiled.stan_file)


def test_handle_is_not_pickled(engine, output_dir):
    compiled = build_model(SOURCE, engine, output_dir=output_dir)
    restored = pickle.loads(pickle.dumps(compiled))
    assert isinstance(restored, CompiledModel)
    assert restored.handle is None
    assert restored == compiled

    reloaded = reload_model(restored, engine)
    assert reloaded.handle is not None
    assert engine.compiled[-1].reused
    assert reload_model(reloaded, engine) is reloaded
