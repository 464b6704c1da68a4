# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Generation of Stan programs and their build data from model specifications.

This module translates a :py:class:`~hierstan.model.spec.ModelSpec` into the two
inputs of the inference engine:

    - The Stan program source, built by :py:class:`StanProgram` and returned by
      :py:func:`make_stancode`
    - The structured numeric data the program declares, returned by
      :py:func:`make_standata`

Both functions are pure: the same specification always produces the same
source text and the same data, which is what makes compiled executables
reusable. They are deliberately independent, so that the data can be generated
(and its errors surfaced) before paying for a compilation.

The generated programs follow a fixed layout. Population-level predictors are
centered in ``transformed data`` when the model has an intercept, so that the
sampler sees a decorrelated intercept ``temp_Intercept``; the intercept on the
original scale is recovered as ``b_Intercept`` in ``generated quantities``.
Group-level effects use a non-centered parameterization with standardized
effects ``z_<i>``, scaled by ``sd_<i>`` and, for correlated terms, by the
Cholesky factor ``L_<i>`` of their correlation matrix.
"""

from __future__ import annotations

import re

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import scipy.sparse

from hierstan.exceptions import SpecificationError
from hierstan.model.autocor import compute_lags
from hierstan.model.priors import Prior
from hierstan.model.spec import ModelSpec
from hierstan.model.terms import GroupInfo, design_matrix, group_design, group_index

# Number of spaces per indentation level
DEFAULT_INDENTATION = 2

# Stan names of prior distributions that differ from their prior-DSL names
_STAN_DISTRIBUTIONS = {"lkj": "lkj_corr_cholesky"}

# Bounds of the autoregressive coefficients
_AR_BOUNDS = ("-1", "1")


@dataclass(frozen=True, eq=False)
class BuildArtifacts:
    """Everything generated from a model specification.

    :ivar code: Stan program source
    :ivar data: Build data, keyed by Stan variable name
    :ivar exclude: Stan variables dropped from the output
    :ivar ranef: Metadata of the group-level terms
    :ivar population: Names of the population-level coefficients
    :ivar intercept: Whether the model has a population-level intercept
    """

    code: str
    data: dict[str, Any]
    exclude: tuple[str, ...]
    ranef: tuple[GroupInfo, ...]
    population: tuple[str, ...]
    intercept: bool

    def equals(self, other: Any) -> bool:
        """Whether two artifacts hold the same program, data and metadata."""
        if not isinstance(other, BuildArtifacts):
            return False
        return (
            self.code == other.code
            and data_equal(self.data, other.data)
            and self.exclude == other.exclude
            and self.ranef == other.ranef
            and self.population == other.population
            and self.intercept == other.intercept
        )


def data_equal(first: dict[str, Any], second: dict[str, Any]) -> bool:
    """Compare two build data dictionaries by content."""
    if list(first) != list(second):
        return False
    return all(np.array_equal(np.asarray(first[k]), np.asarray(second[k])) for k in first)


def stan_name(name: str) -> str:
    """Turn a data column name into a valid Stan identifier suffix."""
    return re.sub(r"[^A-Za-z0-9_]", "_", name)


def _distribution_call(prior: Prior, kind: str) -> tuple[str, str]:
    """Stan function name and arguments of a prior, for ``lpdf`` or ``rng``."""
    name = _STAN_DISTRIBUTIONS.get(prior.distribution, prior.distribution)
    return f"{name}_{kind}", prior.arguments


def target_increment(prior: Prior, parameter: str) -> Optional[str]:
    """Stan statement adding a prior's log density, or None for flat priors.

    Example:
        >>> target_increment(Prior("normal(0, 5)", "b"), "b")
        'target += normal_lpdf(b | 0, 5)'
    """
    if not prior.prior:
        return None
    function, arguments = _distribution_call(prior, "lpdf")
    if arguments:
        return f"target += {function}({parameter} | {arguments})"
    return f"target += {function}({parameter})"


def rng_call(prior: Prior) -> str:
    """Stan expression drawing from a prior."""
    function, arguments = _distribution_call(prior, "rng")
    return f"{function}({arguments})"


class StanProgram:
    """Assemble a Stan program from a model specification.

    Each block of the program is exposed as a property returning its code. The
    complete program is returned by :py:meth:`code`.

    :param spec: Normalized model specification
    :type spec: ModelSpec
    """

    def __init__(self, spec: ModelSpec):
        self.spec = spec
        self.tree = spec.terms
        self.family = spec.family
        self.groups = spec.terms.groups
        self.n_population = len(spec.terms.population)
        self.centered = self.tree.intercept and not spec.sparse and self.n_population > 0
        self.sparse = spec.sparse and self.n_population > 0

    def finalize_line(self, text: str, indentation_level: int) -> str:
        """Indent a line of Stan code and terminate statements with a semicolon."""
        code, comment_sign, comment = text.partition("//")
        code = code.rstrip()
        if code and code[-1] not in {"{", "}", ";"}:
            code += ";"
        if comment_sign:
            code = f"{code}  //{comment}" if code else f"//{comment}"
        return f"{' ' * DEFAULT_INDENTATION * indentation_level}{code}"

    def combine_lines(self, lines: list, indentation_level: int = 1) -> str:
        """Combine lines of Stan code with consistent indentation.

        Nested blocks are written by passing tuples of (extra level, text).
        """
        if len(lines) == 0:
            return ""
        formatted = []
        for line in lines:
            if isinstance(line, tuple):
                extra, text = line
                formatted.append(self.finalize_line(text, indentation_level + extra))
            else:
                formatted.append(self.finalize_line(line, indentation_level))
        return "\n".join(formatted)

    def _block(self, name: str, lines: list, fragment: str = "") -> str:
        """Wrap lines and a user code fragment in a named block."""
        body = self.combine_lines(lines)
        if fragment:
            # User code is only indented, never rewritten
            user_code = "\n".join(
                " " * DEFAULT_INDENTATION + line for line in fragment.splitlines()
            )
            body = "\n".join(part for part in (body, user_code) if part)
        return f"{name} {{\n{body}\n}}" if body else f"{name} {{\n}}"

    @property
    def functions_block(self) -> str:
        """User-supplied functions, or an empty string if there are none."""
        fragment = self.spec.stanvars.code("functions")
        if not fragment:
            return ""
        return "functions {\n" + fragment + "\n}"

    @property
    def data_block(self) -> str:
        """Declarations of the build data."""
        lines = ["int<lower=1> N;  // number of observations"]
        if self.family.response_type == "real":
            lines.append("vector[N] Y;  // response variable")
        else:
            lines.append("array[N] int Y;  // response variable")
        if self.tree.formula.trials is not None:
            lines.append("array[N] int trials;  // number of trials")

        lines.append("int<lower=0> K;  // number of population-level effects")
        if self.sparse:
            lines.extend(
                [
                    "int<lower=0> NZ_X;  // number of non-zero elements of X",
                    "vector[NZ_X] wX;  // non-zero values of X",
                    "array[NZ_X] int vX;  // column indices of wX",
                    "array[N + 1] int uX;  // row start indices of wX",
                ]
            )
        else:
            lines.append("matrix[N, K] X;  // population-level design matrix")

        for group in self.groups:
            i = group.id
            lines.append(f"// data of group-level term {i} ({group.group})")
            lines.append(f"int<lower=1> N_{i};  // number of grouping levels")
            lines.append(f"int<lower=1> M_{i};  // number of coefficients per level")
            lines.append(f"array[N] int<lower=1> J_{i};  // grouping indicator per observation")
            lines.extend(f"vector[N] Z_{i}_{k};" for k in range(1, group.n_coefs + 1))
            if group.has_cov:
                lines.append(f"matrix[N_{i}, N_{i}] Lcov_{i};  // cholesky factor of known covariance")

        if self.spec.autocor is not None:
            lines.append("int<lower=0> Kar;  // AR order")
            lines.append("array[N] int<lower=0> J_lag;  // number of lags per observation")

        for name in self.spec.knots:
            suffix = stan_name(name)
            lines.append(f"int<lower=1> Nk_{suffix};")
            lines.append(f"vector[Nk_{suffix}] knots_{suffix};")

        lines.append("int prior_only;  // should the likelihood be ignored?")
        return self._block("data", lines, self.spec.stanvars.code("data"))

    @property
    def transformed_data_block(self) -> str:
        """Centering of the design matrix, if applicable."""
        lines = []
        if self.centered:
            lines.extend(
                [
                    "matrix[N, K] Xc;  // centered version of X",
                    "vector[K] means_X;  // column means of X before centering",
                    "for (i in 1:K) {",
                    (1, "means_X[i] = mean(X[, i])"),
                    (1, "Xc[, i] = X[, i] - means_X[i]"),
                    "}",
                ]
            )
        fragment = self.spec.stanvars.code("tdata")
        if not lines and not fragment:
            return ""
        return self._block("transformed data", lines, fragment)

    @property
    def parameters_block(self) -> str:
        """Declarations of all sampled parameters."""
        lines = []
        if self.n_population > 0:
            lines.append("vector[K] b;  // population-level effects")
        if self.tree.intercept:
            lines.append("real temp_Intercept;  // temporary intercept")
        for name, lower in self.family.info.aux:
            lines.append(f"real<lower={lower}> {name};")
        if self.spec.autocor is not None:
            lines.append(
                f"vector<lower={_AR_BOUNDS[0]}, upper={_AR_BOUNDS[1]}>[Kar] ar;  "
                "// autoregressive effects"
            )
        for group in self.groups:
            i = group.id
            lines.append(f"vector<lower=0>[M_{i}] sd_{i};  // group-level standard deviations")
            lines.append(f"matrix[M_{i}, N_{i}] z_{i};  // standardized group-level effects")
            if group.has_cor:
                lines.append(
                    f"cholesky_factor_corr[M_{i}] L_{i};  // cholesky factor of correlation matrix"
                )
        return self._block("parameters", lines, self.spec.stanvars.code("parameters"))

    @property
    def transformed_parameters_block(self) -> str:
        """Scaling of the standardized group-level effects."""
        declarations = []
        statements = []
        for group in self.groups:
            i = group.id
            declarations.append(f"matrix[N_{i}, M_{i}] r_{i};  // actual group-level effects")
            declarations.extend(f"vector[N_{i}] r_{i}_{k};" for k in range(1, group.n_coefs + 1))
            if group.has_cor:
                statements.append(f"r_{i} = (diag_pre_multiply(sd_{i}, L_{i}) * z_{i})'")
            elif group.has_cov:
                statements.append(f"r_{i} = Lcov_{i} * (diag_pre_multiply(sd_{i}, z_{i}))'")
            else:
                statements.append(f"r_{i} = (diag_pre_multiply(sd_{i}, z_{i}))'")
            statements.extend(f"r_{i}_{k} = r_{i}[, {k}]" for k in range(1, group.n_coefs + 1))

        fragment = self.spec.stanvars.code("tparameters")
        if not declarations and not fragment:
            return ""
        return self._block("transformed parameters", declarations + statements, fragment)

    def _linear_predictor(self) -> list:
        """Lines computing ``mu`` and, with autocorrelation, the residuals."""
        lines: list = ["vector[N] mu = rep_vector(0.0, N)"]
        if self.spec.autocor is not None:
            lines.append("matrix[N, Kar] Err = rep_matrix(0, N, Kar)")
            lines.append("vector[N] e")

        population = []
        if self.tree.intercept:
            population.append("temp_Intercept")
        if self.sparse:
            population.append("csr_matrix_times_vector(N, K, wX, vX, uX, b)")
        elif self.centered:
            population.append("Xc * b")
        elif self.n_population > 0:
            population.append("X * b")
        if population:
            lines.append(f"mu += {' + '.join(population)}")

        loop = []
        for group in self.groups:
            i = group.id
            loop.extend(
                (1, f"mu[n] += r_{i}_{k}[J_{i}[n]] * Z_{i}_{k}[n]")
                for k in range(1, group.n_coefs + 1)
            )
        if self.spec.autocor is not None:
            loop.extend(
                [
                    (1, "e[n] = Y[n] - mu[n]"),
                    (1, "for (i in 1:J_lag[n]) {"),
                    (2, "Err[n + 1, i] = e[n + 1 - i]"),
                    (1, "}"),
                    (1, "mu[n] += Err[n, 1:Kar] * ar"),
                ]
            )
        if loop:
            lines.extend(["for (n in 1:N) {", *loop, "}"])
        return lines

    def _prior_lines(self) -> list[str]:
        """Target increments of all priors."""
        priors = self.spec.priors
        lines = []
        if self.n_population > 0:
            coef_priors = [priors.lookup("b", coef) for coef in self.tree.population]
            if all(p.prior == coef_priors[0].prior for p in coef_priors):
                lines.append(target_increment(coef_priors[0], "b"))
            else:
                lines.extend(
                    target_increment(p, f"b[{k}]") for k, p in enumerate(coef_priors, start=1)
                )
        if self.tree.intercept:
            lines.append(target_increment(priors.lookup("Intercept"), "temp_Intercept"))
        for name in self.tree.aux:
            lines.append(target_increment(priors.lookup(name), name))
        for group in self.groups:
            i = group.id
            lines.extend(
                target_increment(priors.lookup("sd", coef, group.group), f"sd_{i}[{k}]")
                for k, coef in enumerate(group.coefs, start=1)
            )
            lines.append(f"target += std_normal_lpdf(to_vector(z_{i}))")
            if group.has_cor:
                lines.append(target_increment(priors.lookup("cor", "", group.group), f"L_{i}"))
        return [line for line in lines if line is not None]

    @property
    def model_block(self) -> str:
        """Likelihood, wrapped so that it can be switched off, and priors."""
        lines: list = ["// likelihood including constants", "if (!prior_only) {"]
        for line in self._linear_predictor():
            if isinstance(line, tuple):
                lines.append((1 + line[0], line[1]))
            else:
                lines.append((1, line))
        lines.append((1, f"target += {self.family.likelihood('mu')}"))
        lines.append("}")
        lines.append("// priors including constants")
        lines.extend(self._prior_lines())
        return self._block("model", lines, self.spec.stanvars.code("model"))

    def _prior_draws(self) -> tuple[list[str], list]:
        """Declarations and rejection loops of ``prior_*`` draws."""
        priors = self.spec.priors
        draws: list[tuple[str, Prior, Optional[tuple[str, str]]]] = []
        if self.n_population > 0 and priors.lookup("b").prior:
            draws.append(("prior_b", priors.lookup("b"), None))
        if self.tree.intercept and priors.lookup("Intercept").prior:
            draws.append(("prior_Intercept", priors.lookup("Intercept"), None))
        bounds = self.family.aux_bounds
        for name in self.tree.aux:
            prior = priors.lookup(name)
            if prior.prior:
                draws.append(
                    (f"prior_{name}", prior, _AR_BOUNDS if name == "ar" else (bounds[name], ""))
                )
        for group in self.groups:
            prior = priors.lookup("sd", "", group.group)
            if prior.prior:
                draws.append((f"prior_sd_{group.id}", prior, ("0", "")))

        declarations = [f"real {name} = {rng_call(prior)}" for name, prior, _ in draws]
        loops: list = []
        for name, prior, bound in draws:
            if bound is None:
                continue
            lower, upper = bound
            condition = f"{name} < {lower}" + (f" || {name} > {upper}" if upper else "")
            loops.extend([f"while ({condition}) {{", (1, f"{name} = {rng_call(prior)}"), "}"])
        return declarations, loops

    @property
    def generated_quantities_block(self) -> str:
        """Intercept on the original scale, correlations and prior draws."""
        declarations = []
        statements: list = []
        if self.tree.intercept:
            if self.centered:
                declarations.append(
                    "real b_Intercept = temp_Intercept - dot_product(means_X, b)"
                    "  // actual population-level intercept"
                )
            else:
                declarations.append("real b_Intercept = temp_Intercept")
        for group in self.groups:
            if group.has_cor:
                i = group.id
                declarations.append(
                    f"corr_matrix[M_{i}] Cor_{i} = multiply_lower_tri_self_transpose(L_{i})"
                )
        if self.spec.sample_prior == "yes":
            prior_declarations, statements = self._prior_draws()
            declarations.extend(prior_declarations)

        fragment = self.spec.stanvars.code("genquant")
        if not declarations and not fragment:
            return ""
        return self._block("generated quantities", declarations + statements, fragment)

    def code(self) -> str:
        """Complete Stan program."""
        return "\n".join(
            val
            for val in (
                "// generated with hierstan",
                self.functions_block,
                self.data_block,
                self.transformed_data_block,
                self.parameters_block,
                self.transformed_parameters_block,
                self.model_block,
                self.generated_quantities_block,
            )
            if len(val.strip()) > 0
        ) + "\n"


def make_stancode(spec: ModelSpec, save_model: Optional[Union[str, Path]] = None) -> str:
    """Generate the Stan program of a model.

    :param spec: Normalized model specification
    :type spec: ModelSpec
    :param save_model: Path to which the program is written, if given
    :type save_model: Optional[Union[str, Path]]

    :returns: Stan program source
    :rtype: str
    """
    code = StanProgram(spec).code()
    if save_model is not None:
        Path(save_model).write_text(code, encoding="utf-8")
    return code


def make_standata(spec: ModelSpec) -> dict[str, Any]:
    """Generate the build data of a model.

    :param spec: Normalized model specification
    :type spec: ModelSpec

    :returns: Data for every variable declared in the program's data block
    :rtype: dict[str, Any]

    :raises SpecificationError: If a user-supplied data fragment shadows a
        generated data variable
    """
    data = spec.data
    tree = spec.terms
    formula = tree.formula
    standata: dict[str, Any] = {"N": len(data)}

    if spec.family.response_type == "real":
        standata["Y"] = data[formula.response].to_numpy(dtype=np.float64)
    else:
        standata["Y"] = data[formula.response].to_numpy(dtype=np.int64)
    if formula.trials is not None:
        standata["trials"] = data[formula.trials].to_numpy(dtype=np.int64)

    X, _ = design_matrix(formula.intercept, formula.terms, data)
    standata["K"] = X.shape[1]
    if spec.sparse and X.shape[1] > 0:
        csr = scipy.sparse.csr_matrix(X)
        standata["NZ_X"] = int(csr.nnz)
        standata["wX"] = csr.data.astype(np.float64)
        standata["vX"] = csr.indices.astype(np.int64) + 1
        standata["uX"] = csr.indptr.astype(np.int64) + 1
    else:
        standata["X"] = X

    for group in tree.groups:
        i = group.id
        Z, _ = group_design(group.term, data)
        standata[f"N_{i}"] = len(group.levels)
        standata[f"M_{i}"] = group.n_coefs
        standata[f"J_{i}"] = group_index(data, group.group)
        for k in range(group.n_coefs):
            standata[f"Z_{i}_{k + 1}"] = Z[:, k]
        if group.has_cov:
            standata[f"Lcov_{i}"] = np.linalg.cholesky(spec.cov_ranef[group.group])

    if spec.autocor is not None:
        standata["Kar"] = spec.autocor.p
        standata["J_lag"] = compute_lags(data, spec.autocor)

    for name, values in spec.knots.items():
        suffix = stan_name(name)
        standata[f"Nk_{suffix}"] = len(values)
        standata[f"knots_{suffix}"] = np.asarray(values, dtype=np.float64)

    standata["prior_only"] = int(spec.sample_prior == "only")

    for name, value in spec.stanvars.data().items():
        if name in standata:
            raise SpecificationError(
                f"Stanvar '{name}' clashes with a variable generated by hierstan"
            )
        standata[name] = value
    return standata
