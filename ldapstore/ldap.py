# The session reaches python-ldap through this module so that
# python-ldap-faker can patch ``ldapstore.ldap.initialize`` in our tests.
import ldap
from ldap import *  # noqa: F403
from ldap import dn, modlist  # noqa: F401
from ldap.controls import LDAPControl, SimplePagedResultsControl  # noqa: F401

__version__ = ldap.__version__
