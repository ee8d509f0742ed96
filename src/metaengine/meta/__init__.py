"""Meta‑analysis engines.

This package pools effect sizes from independent studies under fixed
or random effects models and explains the result: heterogeneity
statistics, publication bias diagnostics, subgroup and sensitivity
analyses and meta‑regression.  :func:`handle_request` dispatches the
request shape used by the web API and the CLI.

"""

from .analyzer import MetaAnalyzer  # noqa: F401
from .bias import assess_publication_bias, begg_test, egger_test, fail_safe_n, trim_and_fill  # noqa: F401
from .heterogeneity import heterogeneity  # noqa: F401
from .pooling import pool  # noqa: F401
from .regression import regress  # noqa: F401
from .sensitivity import cumulative, influence, leave_one_out, sensitivity  # noqa: F401
from .service import handle_request  # noqa: F401
from .subgroup import subgroup  # noqa: F401
