import os
import logging
import jax
import jax.numpy as jnp

COND_TOL = 1e2                  ## Max condition number of the Vandermonde matrix in adaptive mode
MAX_SUPPORT_RETRIES = 10        ## Max number of support doublings for a single particle
EPS_FACTOR = 0.5                ## Epsilon = EPS_FACTOR * average neighbour spacing
CHECK_EPOCH = True              ## Raise when an operator is applied to a remapped cloud without update
__version__ = "0.2.0"           ## Package version

PREALLOCATE = False
if not PREALLOCATE:
    os.environ['XLA_PYTHON_CLIENT_PREALLOCATE'] = "false"


FLOAT64 = True
jax.config.update("jax_enable_x64", FLOAT64)   ## Kernels lose polynomial exactness in single precision

jnp.set_printoptions(linewidth=jnp.inf)         ## Print arrays on the same line

logging.getLogger("dcpse").addHandler(logging.NullHandler())
