"""Navigator PHI Meta information.
   Navigator PHI encrypts protected health information at rest, rotates
   the keys protecting it and keeps a compliance audit trail.
"""
__title__ = 'navigator_phi'
__description__ = (
   'Navigator PHI: field-level encryption, online key rotation '
   'and compliance audit for protected health information.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-phi'
