"""Shadow Secret Meta information.
   Shadow Secret materializes encrypted secrets into plaintext config files
   for the lifetime of a session and restores the originals afterwards.
"""
__title__ = 'shadow_secret'
__description__ = (
   'Shadow Secret injects vault secrets into configuration files '
   'for one session and restores them byte-for-byte on exit.'
)
__version__ = '0.2.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
