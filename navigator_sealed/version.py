"""Navigator Sealed Meta information.
   Navigator Sealed seals secrets with a rotating key and re-encrypts
   sealed objects onto the newest key.
"""
__title__ = 'navigator_sealed'
__description__ = (
   'Navigator Sealed manages envelope-encrypted secrets '
   'with a rotating key history.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-sealed'
