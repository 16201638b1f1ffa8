from dcpse.config import __version__
from dcpse.utils import *
from dcpse.monomials import *
from dcpse.cloud import *
from dcpse.support import *
from dcpse.vandermonde import *
from dcpse.assembly import *
from dcpse.operators import *
