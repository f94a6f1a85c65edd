# Every call into python-ldap goes through this module so that the tests can
# patch ``ldapauth.ldap.initialize`` (python-ldap-faker patches
# ``<module>.ldap``) without touching the real ldap package.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
